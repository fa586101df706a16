# /gsync.py
"""
gsync (pull client)
- Mirrors one or more remote "monitors" from a gsync index server into local folders.
- One worker thread per monitor, each polling the server with its own cursor.
- Only changed files are touched: unchanged size+mtime is skipped, changed files
  are compared block by block (CRC-32) and only mismatching blocks are downloaded.
- Idle polls back off exponentially (1s, 2s, 4s, ... up to max_interval).
- Optional gitignore-style rules to skip server paths.
- Styled console output on stderr:
  - FETCH / PATCH green
  - DELETE / RMDIR orange
  - errors red
  - file paths white
  - folder paths light brown
- Log file (optional, via "log_dir") is always plain (no color codes).

The mirror is pull-only: local edits inside a monitor root are overwritten the
next time the server lists the file, without warning.

Usage
  pip install httpx pathspec colorama
  python gsync.py                 # reads ./gsync.json
  python gsync.py /etc/gsync.json

Config
  {
    "ip": "127.0.0.1",
    "port": 6776,
    "monitors": {"<auth-key>": "/srv/mirror"},
    "max_interval": 10,
    "timeout": 30,
    "log_dir": "/var/log/gsync",
    "ignore": ["*.tmp"]
  }
"""

from __future__ import annotations

import argparse
import datetime as dt
import json
import logging
import os
import shutil
import sys
import threading
import time
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Optional

import httpx
from colorama import just_fix_windows_console
from pathspec import PathSpec

__version__ = "0.1.0"

DEFAULT_CONFIG = "gsync.json"
DEFAULT_IP = "127.0.0.1"
DEFAULT_PORT = 6776
DEFAULT_TIMEOUT_SEC = 30.0

MIN_INTERVAL_SEC = 1.0
MAX_INTERVAL_SEC = 10.0

AUTH_HEADER = "AUTH_KEY"
STATUS_DELETED = "deleted"

DOWNLOAD_CHUNK = 64 * 1024


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    ORANGE = "\x1b[38;5;208m"
    WHITE = "\x1b[97m"
    LIGHT_BROWN = "\x1b[33m"


ACTION_COLORS = {
    "FETCH": Ansi.GREEN,
    "PATCH": Ansi.GREEN,
    "DELETE": Ansi.ORANGE,
    "RMDIR": Ansi.ORANGE,
    "MKDIR": Ansi.LIGHT_BROWN,
    "REJECT": Ansi.RED,
    "ERROR": Ansi.RED,
}


def _supports_color(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except Exception:
        return False


class ColorizingFormatter(logging.Formatter):
    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base

        if record.levelno >= logging.ERROR:
            return f"{Ansi.RED}{base}{Ansi.RESET}"

        action = getattr(record, "action", None)
        is_dir = getattr(record, "is_dir", None)
        path_text = getattr(record, "path_text", None)

        if action and action in base:
            action_color = ACTION_COLORS.get(action, "")
            if action_color:
                base = base.replace(action, f"{action_color}{action}{Ansi.RESET}", 1)

        if path_text and path_text in base:
            pcolor = Ansi.LIGHT_BROWN if is_dir else Ansi.WHITE
            base = base.replace(path_text, f"{pcolor}{path_text}{Ansi.RESET}")

        return base


def _today_log_name(prefix: str = "gsync") -> str:
    return f"{prefix}_{dt.date.today().isoformat()}.log"


def setup_logger(log_dir: Optional[Path] = None, name: str = "gsync") -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    logger.propagate = False

    if logger.handlers:
        return logger

    just_fix_windows_console()

    fmt = "%(asctime)s | %(levelname)s | %(threadName)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(logging.INFO)
    ch.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stderr), fmt=fmt, datefmt=datefmt))
    logger.addHandler(ch)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / _today_log_name()
        fh = logging.FileHandler(log_path, encoding="utf-8")
        fh.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
        fh.setLevel(logging.INFO)
        logger.addHandler(fh)
        logger.info("Logging to: %s", log_path)

    return logger


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[Path] = None,
    is_dir: bool = False,
    level: int = logging.INFO,
) -> None:
    extra: dict[str, Any] = {"action": action}
    if path is not None:
        extra["path_text"] = str(path)
        extra["is_dir"] = is_dir
    logger.log(level, f"{action} | {message}", extra=extra)


# -------------------------
# Config / CLI
# -------------------------

@dataclass(frozen=True)
class MonitorConfig:
    key: str
    root: Path


@dataclass(frozen=True)
class AppConfig:
    ip: str
    port: int
    monitors: tuple[MonitorConfig, ...]
    max_interval_sec: float = MAX_INTERVAL_SEC
    timeout_sec: float = DEFAULT_TIMEOUT_SEC
    log_dir: Optional[Path] = None
    ignore: tuple[str, ...] = ()

    @property
    def base_url(self) -> str:
        return f"http://{self.ip}:{self.port}"


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="gsync", description="Mirror remote gsync monitors into local folders.")
    p.add_argument("config", nargs="?", default=DEFAULT_CONFIG, help=f"Path to the JSON config (default: {DEFAULT_CONFIG}).")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return p.parse_args(argv)


def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
        return True
    except ValueError:
        return False


def _number(raw: dict, key: str, default: float, minimum: float) -> float:
    value = raw.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' must be a number, got {value!r}")
    if value < minimum:
        raise ValueError(f"'{key}' must be >= {minimum}, got {value!r}")
    return float(value)


def _parse_monitors(raw: Any) -> tuple[MonitorConfig, ...]:
    if not isinstance(raw, dict) or not raw:
        raise ValueError("'monitors' must be a non-empty object of auth key -> local folder")

    monitors: list[MonitorConfig] = []
    for key, folder in raw.items():
        if not isinstance(folder, str) or not folder.strip():
            raise ValueError(f"Monitor folder must be a non-empty string, got {folder!r}")
        root = Path(folder).expanduser().resolve()
        for other in monitors:
            if root == other.root:
                raise ValueError(f"Two monitors share the same folder: {root}")
            if _is_subpath(root, other.root) or _is_subpath(other.root, root):
                raise ValueError(f"Monitor folders must not be nested: {root} / {other.root}")
        monitors.append(MonitorConfig(key=key, root=root))
    return tuple(monitors)


def load_config(path: Path) -> AppConfig:
    """
    Read and validate the JSON config file.

    Raises OSError when the file cannot be read and ValueError when it is not
    valid JSON or a value has the wrong shape.
    """
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError("Config must be a JSON object")

    ip = raw.get("ip", DEFAULT_IP)
    if not isinstance(ip, str) or not ip:
        raise ValueError(f"'ip' must be a non-empty string, got {ip!r}")

    port = raw.get("port", DEFAULT_PORT)
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise ValueError(f"'port' must be an integer in 1..65535, got {port!r}")

    ignore = raw.get("ignore", [])
    if not isinstance(ignore, list) or not all(isinstance(p, str) for p in ignore):
        raise ValueError("'ignore' must be a list of strings")

    log_dir = raw.get("log_dir")
    if log_dir is not None and not isinstance(log_dir, str):
        raise ValueError(f"'log_dir' must be a string, got {log_dir!r}")

    return AppConfig(
        ip=ip,
        port=port,
        monitors=_parse_monitors(raw.get("monitors")),
        max_interval_sec=_number(raw, "max_interval", MAX_INTERVAL_SEC, MIN_INTERVAL_SEC),
        timeout_sec=_number(raw, "timeout", DEFAULT_TIMEOUT_SEC, 0.1),
        log_dir=Path(log_dir).expanduser().resolve() if log_dir else None,
        ignore=tuple(ignore),
    )


# -------------------------
# Paths + ignore rules
# -------------------------

class PathEscapeError(ValueError):
    """A server-supplied path would resolve outside the monitor root."""


def local_path_for(root: Path, rel_path: str, allow_root: bool = True) -> Path:
    """
    Map a server path (forward slashes, relative to the monitor) onto the local root.

    Root and path are joined with a single separator and normalized lexically,
    so ``a//b`` and ``a/../b`` collapse. Anything landing outside ``root``
    raises PathEscapeError, as does the root itself when ``allow_root`` is False.
    """
    if "\x00" in rel_path:
        raise PathEscapeError(f"NUL byte in server path: {rel_path!r}")
    rel_native = rel_path.replace("/", os.sep).lstrip(os.sep)
    local = Path(os.path.normpath(os.path.join(str(root), rel_native)))
    if not _is_subpath(local, root):
        raise PathEscapeError(f"Server path escapes {root}: {rel_path!r}")
    if not allow_root and local == root:
        raise PathEscapeError(f"Server path is the monitor root {root}: {rel_path!r}")
    return local


class IgnoreMatcher:
    def __init__(self, patterns: list[str] | tuple[str, ...]):
        self.spec = PathSpec.from_lines("gitwildmatch", patterns)

    def is_ignored(self, rel_path: str, is_dir: bool = False) -> bool:
        rel_posix = rel_path.strip("/")
        if not rel_posix:
            return False
        if is_dir:
            rel_posix += "/"
        return self.spec.match_file(rel_posix)


def remove_path(path: Path) -> bool:
    """Delete a file or a whole directory tree. Returns False if nothing was there."""
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
        return True
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


def block_checksum(data: bytes) -> str:
    """IEEE CRC-32 of ``data`` as an unsigned decimal string."""
    return str(zlib.crc32(data) & 0xFFFFFFFF)


# -------------------------
# Remote index
# -------------------------

def _count(value: Any, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise TypeError(f"{field} is not an integer: {value!r}")
    number = int(value)
    if number < 0:
        raise ValueError(f"{field} is negative: {number}")
    return number


@dataclass(frozen=True)
class DirectoryRecord:
    file_path: str
    status: str
    file_mode: int = 0o755

    @property
    def deleted(self) -> bool:
        return self.status == STATUS_DELETED

    @classmethod
    def from_json(cls, obj: dict) -> DirectoryRecord:
        mode = obj.get("FileMode")
        return cls(
            file_path=str(obj["FilePath"]),
            status=str(obj["Status"]),
            file_mode=_count(mode, "FileMode") & 0o7777 if mode is not None else 0o755,
        )


@dataclass(frozen=True)
class FileRecord:
    file_path: str
    status: str
    file_size: int = 0
    last_modified: int = 0

    @property
    def deleted(self) -> bool:
        return self.status == STATUS_DELETED

    @classmethod
    def from_json(cls, obj: dict) -> FileRecord:
        status = str(obj["Status"])
        if status == STATUS_DELETED:
            return cls(file_path=str(obj["FilePath"]), status=status)
        return cls(
            file_path=str(obj["FilePath"]),
            status=status,
            file_size=_count(obj["FileSize"], "FileSize"),
            last_modified=int(obj.get("LastModified", 0)),
        )


@dataclass(frozen=True)
class PartRecord:
    start_index: int
    offset: int
    checksum: str

    @classmethod
    def from_json(cls, obj: dict) -> PartRecord:
        return cls(
            start_index=_count(obj["StartIndex"], "StartIndex"),
            offset=_count(obj["Offset"], "Offset"),
            checksum=str(obj["Checksum"]),
        )


class IndexClient:
    """
    Read-only client for one monitor on the index server.

    Every call swallows transport, status and JSON errors (logged as warnings)
    and returns an empty result; the worker's next poll retries.
    """

    def __init__(
        self,
        base_url: str,
        key: str,
        logger: logging.Logger,
        timeout: float = DEFAULT_TIMEOUT_SEC,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.logger = logger
        self.client = httpx.Client(
            base_url=base_url,
            headers={AUTH_HEADER: key},
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> IndexClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _get_json(self, endpoint: str, params: Optional[dict[str, Any]] = None) -> Any:
        try:
            resp = self.client.get(endpoint, params=params)
            resp.raise_for_status()
            return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            self.logger.warning("GET %s failed: %s", endpoint, e)
            return None

    def _get_records(self, endpoint: str, record_cls, params: dict[str, Any]) -> list:
        payload = self._get_json(endpoint, params)
        if payload is None:
            return []
        if not isinstance(payload, list):
            self.logger.warning("GET %s: expected a JSON array, got %s", endpoint, type(payload).__name__)
            return []

        records = []
        for item in payload:
            try:
                records.append(record_cls.from_json(item))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                self.logger.warning("GET %s: dropping malformed record %r (%s)", endpoint, item, e)
        return records

    def current_time(self) -> Optional[int]:
        payload = self._get_json("/time")
        try:
            return int(payload["current_time"])
        except (KeyError, TypeError, ValueError) as e:
            if payload is not None:
                self.logger.warning("GET /time: unusable response %r (%s)", payload, e)
            return None

    def list_dirs(self, last_indexed: int) -> list[DirectoryRecord]:
        return self._get_records("/dirs", DirectoryRecord, {"last_indexed": last_indexed})

    def list_files(self, dir_path: str, last_indexed: int) -> list[FileRecord]:
        return self._get_records("/files", FileRecord, {"last_indexed": last_indexed, "file_path": dir_path})

    def list_parts(self, file_path: str) -> list[PartRecord]:
        return self._get_records("/file_parts", PartRecord, {"file_path": file_path})

    def download(self, file_path: str, start: int, length: int, sink: BinaryIO) -> int:
        """
        Stream ``length`` bytes of ``file_path`` starting at ``start`` into ``sink``
        at the same offset. Returns the number of bytes written; a short count is
        not an error.
        """
        if length <= 0:
            return 0

        params = {"file_path": file_path, "start": start, "length": length}
        written = 0
        try:
            with self.client.stream("GET", "/download", params=params) as resp:
                resp.raise_for_status()
                sink.seek(start)
                for chunk in resp.iter_bytes(DOWNLOAD_CHUNK):
                    chunk = chunk[: length - written]
                    sink.write(chunk)
                    written += len(chunk)
                    if written >= length:
                        break
        except httpx.HTTPError as e:
            self.logger.warning("GET /download %s [%d+%d] failed after %d bytes: %s", file_path, start, length, written, e)
        return written


# -------------------------
# Reconciliation
# -------------------------

class Reconciler:
    """Applies the server's change set for one monitor to its local root."""

    def __init__(
        self,
        index: IndexClient,
        root: Path,
        logger: logging.Logger,
        ignore: Optional[IgnoreMatcher] = None,
    ):
        self.index = index
        self.root = root
        self.logger = logger
        self.ignore = ignore or IgnoreMatcher([])

    def reconcile(self, cursor: int) -> tuple[bool, int]:
        """
        Run one poll cycle against ``cursor``.

        Returns ``(progress, next_cursor)``. ``progress`` is False for an idle
        cycle (no directories changed). When ``/time`` is unreachable the
        cursor is returned unchanged.
        """
        server_now = self.index.current_time()
        if server_now is None:
            return False, cursor

        dirs = self.index.list_dirs(cursor)
        if not dirs:
            return False, server_now

        for record in dirs:
            self.sync_directory(record, cursor)
        return True, server_now

    def _resolve(self, rel_path: str, allow_root: bool = True) -> Optional[Path]:
        try:
            return local_path_for(self.root, rel_path, allow_root=allow_root)
        except PathEscapeError as e:
            log_action(self.logger, "REJECT", str(e), level=logging.WARNING)
            return None

    def sync_directory(self, record: DirectoryRecord, cursor: int) -> None:
        if self.ignore.is_ignored(record.file_path, is_dir=True):
            self.logger.debug("SKIP | ignored dir %s", record.file_path)
            return

        local = self._resolve(record.file_path)
        if local is None:
            return

        if record.deleted:
            try:
                if remove_path(local):
                    log_action(self.logger, "RMDIR", str(local), path=local, is_dir=True)
            except OSError as e:
                log_action(self.logger, "ERROR", f"rmdir {local} | {e}", path=local, is_dir=True, level=logging.ERROR)
            return

        try:
            if not local.is_dir():
                os.makedirs(local, mode=record.file_mode, exist_ok=True)
                log_action(self.logger, "MKDIR", f"{local} ({record.file_mode:o})", path=local, is_dir=True)
        except OSError as e:
            log_action(self.logger, "ERROR", f"mkdir {local} | {e}", path=local, is_dir=True, level=logging.ERROR)

        for file_record in self.index.list_files(record.file_path, cursor):
            self.sync_file(file_record)

    def sync_file(self, record: FileRecord) -> None:
        if self.ignore.is_ignored(record.file_path):
            self.logger.debug("SKIP | ignored file %s", record.file_path)
            return

        # a file can never live at the monitor root itself
        local = self._resolve(record.file_path, allow_root=False)
        if local is None:
            return

        try:
            if record.deleted:
                if remove_path(local):
                    log_action(self.logger, "DELETE", str(local), path=local)
                return

            try:
                st = local.stat()
            except FileNotFoundError:
                self.full_fetch(record, local)
                return

            if local.is_dir() and local != self.root:
                remove_path(local)
                log_action(self.logger, "RMDIR", f"{local} (replaced by file)", path=local, is_dir=True)
                self.full_fetch(record, local)
                return

            if st.st_size == record.file_size and int(st.st_mtime) == record.last_modified:
                self.logger.debug("SKIP | unchanged %s", local)
                return

            self.patch_blocks(record, local)
        except OSError as e:
            log_action(self.logger, "ERROR", f"{record.file_path} -> {local} | {e}", path=local, level=logging.ERROR)

    def full_fetch(self, record: FileRecord, local: Path) -> None:
        with local.open("wb") as sink:
            written = self.index.download(record.file_path, 0, record.file_size, sink)
        level = logging.INFO if written == record.file_size else logging.WARNING
        log_action(self.logger, "FETCH", f"{local} ({written}/{record.file_size} bytes)", path=local, level=level)

    def patch_blocks(self, record: FileRecord, local: Path) -> int:
        """
        Truncate ``local`` to the server size, then re-download every block whose
        CRC-32 differs from the server's. Returns the number of blocks fetched.
        """
        fetched = 0
        with local.open("r+b") as f:
            f.truncate(record.file_size)
            parts = self.index.list_parts(record.file_path)
            if not parts:
                log_action(self.logger, "PATCH", f"{local} truncated to {record.file_size}, no parts listed", path=local)
                return 0

            for part in parts:
                # blocks are clamped to the declared size so the file never grows past it
                length = min(part.offset, record.file_size - part.start_index)
                if length <= 0:
                    self.logger.debug("SKIP | %s block %d+%d past end", local, part.start_index, part.offset)
                    continue
                f.seek(part.start_index)
                data = f.read(length)
                if block_checksum(data) == part.checksum:
                    continue
                self.logger.debug("PATCH | %s block %d+%d", local, part.start_index, length)
                self.index.download(record.file_path, part.start_index, length, f)
                fetched += 1

        log_action(self.logger, "PATCH", f"{local} ({fetched}/{len(parts)} blocks)", path=local)
        return fetched


# -------------------------
# Workers
# -------------------------

def next_interval(current: float, progress: bool, max_interval: float = MAX_INTERVAL_SEC) -> float:
    if progress:
        return MIN_INTERVAL_SEC
    return min(current * 2, max_interval)


class MonitorWorker(threading.Thread):
    def __init__(
        self,
        monitor: MonitorConfig,
        reconciler: Reconciler,
        logger: logging.Logger,
        stop_event: threading.Event,
        max_interval_sec: float = MAX_INTERVAL_SEC,
    ):
        super().__init__(daemon=True, name=f"monitor:{monitor.root.name or monitor.root}")
        self.monitor = monitor
        self.reconciler = reconciler
        self.logger = logger
        self.stop_event = stop_event
        self.max_interval_sec = max(MIN_INTERVAL_SEC, float(max_interval_sec))
        self.cursor = 0
        self.sleep_interval = MIN_INTERVAL_SEC

    def poll_once(self) -> bool:
        try:
            progress, cursor = self.reconciler.reconcile(self.cursor)
        except Exception:
            self.logger.exception("Poll failed for %s (cursor stays at %d)", self.monitor.root, self.cursor)
            progress = False
        else:
            if cursor < self.cursor:
                self.logger.warning("Server time went back (%d -> %d), following it", self.cursor, cursor)
            self.cursor = cursor

        self.sleep_interval = next_interval(self.sleep_interval, progress, self.max_interval_sec)
        return progress

    def run(self) -> None:
        self.logger.info("WORKER: started for %s", self.monitor.root)
        try:
            while not self.stop_event.is_set():
                self.poll_once()
                self.stop_event.wait(self.sleep_interval)
        finally:
            self.reconciler.index.close()
            self.logger.info("WORKER: stopped for %s", self.monitor.root)


def build_worker(cfg: AppConfig, monitor: MonitorConfig, logger: logging.Logger, stop_event: threading.Event) -> MonitorWorker:
    index = IndexClient(cfg.base_url, monitor.key, logger, timeout=cfg.timeout_sec)
    reconciler = Reconciler(index, monitor.root, logger, ignore=IgnoreMatcher(cfg.ignore))
    return MonitorWorker(monitor, reconciler, logger, stop_event, max_interval_sec=cfg.max_interval_sec)


# -------------------------
# Main
# -------------------------

def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)

    try:
        cfg = load_config(Path(args.config))
    except (OSError, ValueError) as e:
        logger = setup_logger()
        logger.error("Config error: cannot load %s | %s", args.config, e)
        return 2

    logger = setup_logger(cfg.log_dir)
    logger.info("Server : %s", cfg.base_url)

    try:
        for monitor in cfg.monitors:
            monitor.root.mkdir(parents=True, exist_ok=True)
            logger.info("Monitor: %s", monitor.root)
    except OSError as e:
        logger.error("Config error: %s", e)
        return 2

    stop_event = threading.Event()
    workers = [build_worker(cfg, monitor, logger, stop_event) for monitor in cfg.monitors]

    logger.info("Starting %d worker(s)... (Ctrl+C to stop)", len(workers))
    for worker in workers:
        worker.start()

    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        logger.info("Stopping...")
    finally:
        stop_event.set()
        for worker in workers:
            worker.join(timeout=10)
        logger.info("Stopped.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
