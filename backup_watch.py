# /backup_watch.py
"""
Backup Watch (no UI)
- Mirrors a source folder into a backup folder on a fixed schedule.
- One pass at startup, then one pass every `timeBetweenBackups` hours,
  counted from the end of the previous pass (passes never overlap).
- New files are copied, changed files are recopied, unchanged files are left alone.
- "Changed" is decided by a chunked MD5 of both files, never by mtime.
- Nothing is ever deleted from the backup folder.
- Config lives in a JSON file (./config.json by default) and is re-read before every pass.
  Editing it wakes the scheduler early.
- Optional .backupignore in the source root (gitignore-style rules).
- Styled console output:
  - CREATE / UPDATE green
  - MKDIR light brown
  - failures red
  - file paths white
  - folder paths light brown
- Log file is always plain (no color codes).

Usage
  pip install watchdog pathspec colorama
  backup-watch
  backup-watch --config /etc/backup-watch/config.json --log-dir /var/log/backup-watch
"""

from __future__ import annotations

import argparse
import datetime as dt
import enum
import hashlib
import json
import logging
import os
import shutil
import signal
import stat
import subprocess
import sys
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, NamedTuple, Optional

from pathspec import PathSpec
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

try:
    from colorama import init as colorama_init  # type: ignore
except Exception:  # pragma: no cover
    colorama_init = None

DEFAULT_CONFIG_PATH = Path("config.json")
IGNORE_FILE_NAME = ".backupignore"

CHUNK_SIZE = 8192
SECONDS_PER_HOUR = 3600

PLACEHOLDER_SOURCE = "Source Root Directory Path"
PLACEHOLDER_BACKUP = "Backup Root Directory Path"
PLACEHOLDER_INTERVAL_HOURS = 24


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
    "CREATE": Ansi.GREEN,
    "UPDATE": Ansi.GREEN,
    "MKDIR": Ansi.LIGHT_BROWN,
    "FAILED": Ansi.RED,
    "COMPARE_FAIL": Ansi.ORANGE,
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

        action = getattr(record, "action", None)
        is_dir = getattr(record, "is_dir", None)
        path_text = getattr(record, "path_text", None)

        if record.levelno >= logging.ERROR:
            return f"{Ansi.RED}{base}{Ansi.RESET}"

        if action:
            action_color = ACTION_COLORS.get(action, "")
            if action_color and action in base:
                base = base.replace(action, f"{action_color}{action}{Ansi.RESET}", 1)

        if path_text and path_text in base:
            pcolor = Ansi.LIGHT_BROWN if is_dir else Ansi.WHITE
            base = base.replace(path_text, f"{pcolor}{path_text}{Ansi.RESET}")

        return base


def _today_log_name(prefix: str = "backup") -> str:
    return f"{prefix}_{dt.date.today().isoformat()}.log"


def setup_logger(log_dir: Path, level: int = logging.INFO) -> logging.Logger:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / _today_log_name()

    logger = logging.getLogger("backup_watch")
    logger.setLevel(level)
    logger.propagate = False

    if logger.handlers:
        return logger

    if colorama_init:
        colorama_init()

    fmt = "%(asctime)s | %(levelname)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
    fh.setLevel(level)

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(level)
    ch.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stdout), fmt=fmt, datefmt=datefmt))

    logger.addHandler(fh)
    logger.addHandler(ch)

    logger.info("Logging to: %s", log_path)
    return logger


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[Path] = None,
    is_dir: Optional[bool] = None,
    level: int = logging.INFO,
) -> None:
    extra = {"action": action}
    if path is not None:
        extra["path_text"] = str(path)
        extra["is_dir"] = bool(is_dir) if is_dir is not None else (path.exists() and path.is_dir())
    logger.log(level, f"{action} | {message}", extra=extra)


# -------------------------
# Config
# -------------------------

class ConfigError(Exception):
    """Config file is unreadable, malformed or points at unusable folders."""


class ConfigMissingError(ConfigError):
    """No config file existed; a placeholder was written for the operator to edit."""

    def __init__(self, path: Path):
        super().__init__(f"Please update {path} and re-run the program!")
        self.path = path


@dataclass(frozen=True)
class BackupConfig:
    source_path: Path
    backup_path: Path
    time_between_backups: int

    @classmethod
    def from_dict(cls, raw: dict) -> "BackupConfig":
        if not isinstance(raw, dict):
            raise ConfigError("Config must be a JSON object.")
        missing = [k for k in ("sourcePath", "backupPath", "timeBetweenBackups") if k not in raw]
        if missing:
            raise ConfigError(f"Config is missing field(s): {', '.join(missing)}")

        source, backup, hours = raw["sourcePath"], raw["backupPath"], raw["timeBetweenBackups"]
        if not isinstance(source, str) or not source:
            raise ConfigError("sourcePath must be a non-empty string.")
        if not isinstance(backup, str) or not backup:
            raise ConfigError("backupPath must be a non-empty string.")
        # bool is an int subclass; `true` is not an interval
        if isinstance(hours, bool) or not isinstance(hours, int) or hours < 0:
            raise ConfigError("timeBetweenBackups must be a non-negative integer (hours).")

        return cls(source_path=Path(source), backup_path=Path(backup), time_between_backups=hours)

    def to_dict(self) -> dict:
        return {
            "sourcePath": str(self.source_path),
            "backupPath": str(self.backup_path),
            "timeBetweenBackups": self.time_between_backups,
        }

    @property
    def interval_sec(self) -> float:
        return float(self.time_between_backups * SECONDS_PER_HOUR)


def placeholder_config() -> BackupConfig:
    return BackupConfig(
        source_path=Path(PLACEHOLDER_SOURCE),
        backup_path=Path(PLACEHOLDER_BACKUP),
        time_between_backups=PLACEHOLDER_INTERVAL_HOURS,
    )


def create_config(path: Path, config: BackupConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config.to_dict(), indent=2), encoding="utf-8")


def load_config(path: Path) -> BackupConfig:
    """Read and parse the config file. Does not touch the folders it names."""
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Could not read config file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file {path} is not valid JSON: {e}") from e
    return BackupConfig.from_dict(raw)


def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.resolve().relative_to(parent.resolve())
        return True
    except ValueError:
        return False


def validate_config(config: BackupConfig) -> BackupConfig:
    """Check both roots, returning a copy with user-expanded absolute paths."""
    source = config.source_path.expanduser().resolve()
    backup = config.backup_path.expanduser().resolve()

    if not source.is_dir():
        raise ConfigError(f"Source folder does not exist or is not a folder: {source}")
    if not backup.is_dir():
        raise ConfigError(f"Backup folder does not exist or is not a folder: {backup}")
    if source == backup:
        raise ConfigError("Source and backup folders must be different.")
    if _is_subpath(backup, source):
        raise ConfigError("Backup folder must NOT be inside source folder (would cause loops).")
    if _is_subpath(source, backup):
        raise ConfigError("Source folder must NOT be inside backup folder.")

    return BackupConfig(source_path=source, backup_path=backup, time_between_backups=config.time_between_backups)


def create_or_load_config(path: Path, notifier: Optional["Notifier"] = None) -> BackupConfig:
    """
    Load and validate the config at `path`.
    If it does not exist, write placeholders, tell the operator and raise ConfigMissingError.
    """
    if not path.exists():
        try:
            create_config(path, placeholder_config())
        except OSError as e:
            raise ConfigError(f"Could not write placeholder config {path}: {e}") from e
        err = ConfigMissingError(path.resolve())
        if notifier is not None:
            notifier.notify_operator(str(err))
        raise err
    return validate_config(load_config(path))


# -------------------------
# Operator notification
# -------------------------

class Notifier:
    def notify_operator(self, message: str) -> None:
        raise NotImplementedError


class NullNotifier(Notifier):
    def notify_operator(self, message: str) -> None:
        return None


class LogNotifier(Notifier):
    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("backup_watch")

    def notify_operator(self, message: str) -> None:
        self.logger.warning("OPERATOR | %s", message)


class WindowsConsoleNotifier(LogNotifier):
    """Logs, then pops a console window with the message so the operator sees it."""

    def notify_operator(self, message: str) -> None:
        super().notify_operator(message)
        args = ["cmd", "/C", "start", "cmd.exe", "/k", f"echo {message}"]
        try:
            subprocess.run(args, check=True)
        except (OSError, subprocess.CalledProcessError) as e:
            self.logger.error("Could not open notification window: %s", e)


def default_notifier(logger: Optional[logging.Logger] = None) -> Notifier:
    if sys.platform == "win32":
        return WindowsConsoleNotifier(logger)
    return LogNotifier(logger)


# -------------------------
# Ignore rules
# -------------------------

class IgnoreMatcher:
    def __init__(self, source_root: Path, patterns: list[str]):
        self.source_root = source_root
        self.spec = PathSpec.from_lines("gitwildmatch", patterns)

    @classmethod
    def from_source_root(cls, source_root: Path) -> "IgnoreMatcher":
        ignore_file = source_root / IGNORE_FILE_NAME
        try:
            lines = ignore_file.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            lines = []
        return cls(source_root, lines)

    def is_ignored(self, path: Path, is_dir: bool = False) -> bool:
        try:
            rel = path.relative_to(self.source_root)
        except ValueError:
            return True
        rel_posix = rel.as_posix()
        if rel_posix == ".":
            return False
        if is_dir and not rel_posix.endswith("/"):
            rel_posix += "/"
        return self.spec.match_file(rel_posix)


# -------------------------
# Tree walk
# -------------------------

class WalkEntry(NamedTuple):
    path: Path
    is_dir: bool
    error: Optional[OSError] = None


def walk_source(
    root: Path,
    skip: Optional[Callable[[Path, bool], bool]] = None,
) -> Iterator[WalkEntry]:
    """
    Yield every path under `root`, root first, each directory before anything inside it.

    Unreadable paths come back with `error` set instead of raising, and the walk
    carries on with their siblings. Symlinked directories are reported but not entered.
    `skip(path, is_dir)` prunes an entry (and its subtree).
    """
    try:
        root_is_dir = stat.S_ISDIR(root.stat().st_mode)
    except OSError as e:
        yield WalkEntry(root, False, e)
        return

    # (path, is_dir, descend)
    stack = [(root, root_is_dir, root_is_dir)]
    while stack:
        path, is_dir, descend = stack.pop()
        yield WalkEntry(path, is_dir)
        if not descend:
            continue

        try:
            with os.scandir(path) as it:
                children = sorted(it, key=lambda d: d.name)
        except OSError as e:
            yield WalkEntry(path, True, e)
            continue

        pending = []
        for child in children:
            child_path = Path(child.path)
            try:
                child_is_dir = child.is_dir()
                child_is_link = child.is_symlink()
            except OSError as e:
                yield WalkEntry(child_path, False, e)
                continue
            if skip is not None and skip(child_path, child_is_dir):
                continue
            pending.append((child_path, child_is_dir, child_is_dir and not child_is_link))

        stack.extend(reversed(pending))


def backup_path_for(source_root: Path, backup_root: Path, source_path: Path) -> Path:
    """Map a path under the source root to the same relative path under the backup root."""
    rel = source_path.relative_to(source_root)
    return backup_root / rel


# -------------------------
# Content comparison
# -------------------------

def file_digest(path: Path, chunk_size: int = CHUNK_SIZE) -> str:
    h = hashlib.md5()
    with path.open("rb") as f:
        while True:
            b = f.read(chunk_size)
            if not b:
                break
            h.update(b)
    return h.hexdigest()


def files_equal(src: Path, dst: Path) -> bool:
    """
    True when both files hold exactly the same bytes.

    Sizes are compared first; equal sizes fall through to a full MD5 of each file.
    Read errors are raised, not turned into a verdict.
    """
    if src.stat().st_size != dst.stat().st_size:
        return False
    return file_digest(src) == file_digest(dst)


# -------------------------
# Mirror pass
# -------------------------

class Action(str, enum.Enum):
    MKDIR = "MKDIR"
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    UNCHANGED = "UNCHANGED"
    DIR_EXISTS = "DIR_EXISTS"
    IGNORED = "IGNORED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class PassFailure:
    path: Path
    attempted: str
    error: str


@dataclass
class PassResult:
    source_root: Path
    backup_root: Path
    counts: Counter = field(default_factory=Counter)
    failures: list[PassFailure] = field(default_factory=list)
    started_at: dt.datetime = field(default_factory=dt.datetime.now)
    finished_at: Optional[dt.datetime] = None

    def record(self, action: Action) -> Action:
        self.counts[action] += 1
        return action

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def copied(self) -> int:
        return self.counts[Action.CREATE] + self.counts[Action.UPDATE]

    @property
    def failed(self) -> int:
        return len(self.failures)

    def summary(self) -> str:
        parts = [f"{a.value.lower()}={self.counts[a]}" for a in Action if self.counts[a]]
        return ", ".join(parts) or "nothing to do"


def copy_file(src: Path, dst: Path) -> None:
    """Create or truncate `dst` and stream the whole of `src` into it."""
    shutil.copyfile(src, dst)


def _fail(
    logger: logging.Logger,
    result: PassResult,
    attempted: str,
    path: Path,
    is_dir: bool,
    error: Exception,
) -> Action:
    result.failures.append(PassFailure(path=path, attempted=attempted, error=str(error)))
    log_action(logger, "FAILED", f"{attempted} {path} | {error}", path=path, is_dir=is_dir, level=logging.ERROR)
    return result.record(Action.FAILED)


def _copy_logged(
    logger: logging.Logger,
    result: PassResult,
    action: Action,
    src: Path,
    dst: Path,
) -> Action:
    try:
        copy_file(src, dst)
    except OSError as e:
        return _fail(logger, result, action.value, dst, False, e)
    log_action(logger, action.value, f"{src} -> {dst}", path=dst, is_dir=False)
    return result.record(action)


def mirror_entry(
    entry: WalkEntry,
    source_root: Path,
    backup_root: Path,
    logger: logging.Logger,
    result: PassResult,
) -> Action:
    """Bring the backup copy of one walked path in line with the source."""
    if entry.error is not None:
        return _fail(logger, result, "WALK", entry.path, entry.is_dir, entry.error)

    dst = backup_path_for(source_root, backup_root, entry.path)

    exists = os.path.lexists(dst)

    if not entry.is_dir:
        try:
            regular = stat.S_ISREG(entry.path.stat().st_mode)
        except OSError as e:
            return _fail(logger, result, "STAT", entry.path, False, e)
        if not regular:
            attempted = Action.UPDATE if exists else Action.CREATE
            return _fail(logger, result, attempted.value, entry.path, False, OSError("source is not a regular file"))

    if not exists:
        if entry.is_dir:
            try:
                dst.mkdir()
            except OSError as e:
                return _fail(logger, result, Action.MKDIR.value, dst, True, e)
            log_action(logger, "MKDIR", str(dst), path=dst, is_dir=True)
            return result.record(Action.MKDIR)
        return _copy_logged(logger, result, Action.CREATE, entry.path, dst)

    if entry.is_dir:
        logger.debug("DIR_EXISTS | %s", dst)
        return result.record(Action.DIR_EXISTS)

    # never write through a symlink or into anything that is not a plain file
    try:
        dst_mode = os.lstat(dst).st_mode
    except OSError as e:
        return _fail(logger, result, Action.UPDATE.value, dst, False, e)
    if stat.S_ISLNK(dst_mode):
        return _fail(logger, result, Action.UPDATE.value, dst, False, OSError("backup path is a symlink"))
    if not stat.S_ISREG(dst_mode):
        return _fail(logger, result, Action.UPDATE.value, dst, False, OSError("backup path is not a regular file"))

    try:
        same = files_equal(entry.path, dst)
    except OSError as e:
        log_action(
            logger,
            "COMPARE_FAIL",
            f"compare error, assuming changed: {entry.path} | {e}",
            path=dst,
            is_dir=False,
            level=logging.WARNING,
        )
        same = False

    if same:
        logger.debug("UNCHANGED | %s", dst)
        return result.record(Action.UNCHANGED)
    return _copy_logged(logger, result, Action.UPDATE, entry.path, dst)


def _load_ignore(source_root: Path, logger: logging.Logger) -> IgnoreMatcher:
    try:
        return IgnoreMatcher.from_source_root(source_root)
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Could not read %s, ignoring nothing: %s", source_root / IGNORE_FILE_NAME, e)
        return IgnoreMatcher(source_root, [])


def run_backup_pass(config: BackupConfig, logger: Optional[logging.Logger] = None) -> PassResult:
    """Walk the source root once and mirror every entry into the backup root."""
    logger = logger or logging.getLogger("backup_watch")
    source_root, backup_root = config.source_path, config.backup_path
    result = PassResult(source_root=source_root, backup_root=backup_root)

    logger.info("BACKUP PASS: start %s -> %s", source_root, backup_root)
    ignore = _load_ignore(source_root, logger)

    def skip(path: Path, is_dir: bool) -> bool:
        if not ignore.is_ignored(path, is_dir=is_dir):
            return False
        logger.debug("IGNORED | %s", path)
        result.record(Action.IGNORED)
        return True

    for entry in walk_source(source_root, skip=skip):
        mirror_entry(entry, source_root, backup_root, logger, result)

    result.finished_at = dt.datetime.now()
    logger.info("BACKUP PASS: done (%s)", result.summary())
    if result.failures:
        logger.warning("BACKUP PASS: %d entr%s failed", result.failed, "y" if result.failed == 1 else "ies")
    return result


# -------------------------
# Scheduling
# -------------------------

class ConfigChangeHandler(FileSystemEventHandler):
    """Sets `wake` whenever the config file is written, replaced or moved into place."""

    def __init__(self, config_path: Path, wake: threading.Event):
        self.config_path = config_path.resolve()
        self.wake = wake

    def _is_config(self, raw_path) -> bool:
        if not raw_path:
            return False
        return Path(os.fsdecode(raw_path)).resolve() == self.config_path

    def on_any_event(self, event):
        if event.is_directory:
            return
        if self._is_config(event.src_path) or self._is_config(getattr(event, "dest_path", None)):
            self.wake.set()


def start_config_watcher(config_path: Path, wake: threading.Event) -> Observer:
    observer = Observer()
    observer.schedule(ConfigChangeHandler(config_path, wake), str(config_path.resolve().parent), recursive=False)
    observer.start()
    return observer


class BackupScheduler:
    """
    Runs one pass immediately, then one pass per interval.

    The interval is waited out after a pass finishes, so passes never overlap.
    The config is reloaded before every scheduled pass; a broken reload skips
    that pass and keeps the last good config. `request_run()` cuts the wait short.
    An interval of 0 hours means a single pass.
    """

    def __init__(
        self,
        config_path: Path,
        config: BackupConfig,
        logger: Optional[logging.Logger] = None,
        pass_runner: Callable[..., PassResult] = run_backup_pass,
    ):
        self.config_path = config_path
        self.config = config
        self.logger = logger or logging.getLogger("backup_watch")
        self.pass_runner = pass_runner
        self.wake = threading.Event()
        self.stop_event = threading.Event()
        self.passes_run = 0

    def request_run(self) -> None:
        self.wake.set()

    def stop(self) -> None:
        self.stop_event.set()
        self.wake.set()

    def reload_config(self) -> Optional[BackupConfig]:
        try:
            config = validate_config(load_config(self.config_path))
        except ConfigError as e:
            self.logger.error("Config reload failed, skipping this pass: %s", e)
            return None
        if config != self.config:
            self.logger.info("Config changed: %s -> %s every %dh", config.source_path, config.backup_path, config.time_between_backups)
        self.config = config
        return config

    def run_once(self, config: BackupConfig) -> Optional[PassResult]:
        self.passes_run += 1
        try:
            return self.pass_runner(config, logger=self.logger)
        except Exception:
            self.logger.exception("BACKUP PASS: aborted by unexpected error")
            return None

    def _wait_for_tick(self, interval: float) -> None:
        # Event.wait overflows on huge timeouts; long intervals wait an hour at a time
        deadline = time.monotonic() + interval
        while not self.wake.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            self.wake.wait(min(remaining, SECONDS_PER_HOUR))

    def run_forever(self) -> None:
        self.run_once(self.config)

        while not self.stop_event.is_set():
            interval = self.config.interval_sec
            if interval <= 0:
                self.logger.info("timeBetweenBackups is 0, not scheduling further passes.")
                return

            self.logger.info("Next pass in %dh (edit %s to run sooner)", self.config.time_between_backups, self.config_path)
            self._wait_for_tick(interval)
            if self.stop_event.is_set():
                return
            self.wake.clear()

            config = self.reload_config()
            if config is not None:
                self.run_once(config)


# -------------------------
# Main
# -------------------------

def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Periodically mirror one folder into a backup folder.")
    p.add_argument("--config", type=str, default=str(DEFAULT_CONFIG_PATH), help="Path to config.json.")
    p.add_argument("--log-dir", type=str, default=".", help="Directory for log files.")
    return p.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    logger = setup_logger(Path(args.log_dir).expanduser())
    notifier = default_notifier(logger)
    config_path = Path(args.config).expanduser()

    try:
        config = create_or_load_config(config_path, notifier)
    except ConfigMissingError as e:
        logger.error("Config missing, placeholder written: %s", e.path)
        return 1
    except ConfigError as e:
        logger.error("Config error: %s", e)
        return 2

    logger.info("Source : %s", config.source_path)
    logger.info("Backup : %s", config.backup_path)
    logger.info("Every  : %dh", config.time_between_backups)

    scheduler = BackupScheduler(config_path, config, logger=logger)

    def handle_signal(signum, frame):
        logger.info("Received signal %s, stopping after the current pass...", signum)
        scheduler.stop()

    signal.signal(signal.SIGTERM, handle_signal)

    observer = start_config_watcher(config_path, scheduler.wake)
    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        logger.info("Stopping...")
    finally:
        scheduler.stop()
        observer.stop()
        observer.join(timeout=10)
        logger.info("Stopped.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
