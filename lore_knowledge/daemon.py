"""Background sync daemon.

The daemon runs one sync at start-up, then keeps two loops going: a watchdog
observer that turns bursts of file events into debounced syncs (without git
pull), and a periodic timer that runs a pull-enabled sync every few minutes.

Liveness is a pid file held under an exclusive ``fcntl`` lock for the life of
the process. A pid file nobody holds a lock on is stale and removed by
``get_pid``.
"""

import json
import logging
import os
import signal
import subprocess
import sys
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from lore_knowledge._config import ConfigManager, SyncSource, get_config_dir
from lore_knowledge._locking import HAS_FCNTL
from lore_knowledge._logging import FILE, INDEX, PULL, START, STOP, SYNC
from lore_knowledge.discover import SKIPPED_DIRS
from lore_knowledge.glob_matcher import matches_glob
from lore_knowledge.utils import utc_now_iso

if HAS_FCNTL:
    import fcntl

if TYPE_CHECKING:
    from lore_knowledge.orchestrator import SyncRunResult

logger = logging.getLogger(__name__)

PID_FILENAME = "daemon.pid"
STATUS_FILENAME = "daemon.status.json"
LOG_FILENAME = "daemon.log"

DEFAULT_DEBOUNCE = 2.0
DEFAULT_PULL_INTERVAL = 300.0
START_TIMEOUT = 5.0
STOP_TIMEOUT = 5.0


def pid_file_path(config_dir: Path | None = None) -> Path:
    return (config_dir or get_config_dir()) / PID_FILENAME


def status_file_path(config_dir: Path | None = None) -> Path:
    return (config_dir or get_config_dir()) / STATUS_FILENAME


def log_file_path(config_dir: Path | None = None) -> Path:
    return (config_dir or get_config_dir()) / LOG_FILENAME


# =============================================================================
# Status
# =============================================================================


@dataclass
class DaemonStatus:
    """Liveness and last-run summary persisted to daemon.status.json."""

    pid: int
    started_at: str
    last_sync: str | None = None
    last_sync_result: dict[str, int] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"pid": self.pid, "started_at": self.started_at}
        if self.last_sync:
            data["last_sync"] = self.last_sync
        if self.last_sync_result is not None:
            data["last_sync_result"] = self.last_sync_result
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DaemonStatus":
        return cls(
            pid=int(data.get("pid", 0)),
            started_at=str(data.get("started_at", "")),
            last_sync=data.get("last_sync"),
            last_sync_result=data.get("last_sync_result"),
        )


def read_status(config_dir: Path | None = None) -> DaemonStatus | None:
    """Load daemon.status.json; None when missing or unreadable."""
    try:
        with open(status_file_path(config_dir)) as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return None
    if not isinstance(data, dict):
        return None
    try:
        return DaemonStatus.from_dict(data)
    except (TypeError, ValueError):
        return None


def write_status(status: DaemonStatus, config_dir: Path | None = None) -> None:
    path = status_file_path(config_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    with open(tmp, "w") as f:
        json.dump(status.to_dict(), f, indent=2)
    os.replace(tmp, path)


# =============================================================================
# Pid file
# =============================================================================


class PidFile:
    """Exclusive, advisory-locked pid file owned by the running daemon."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._handle: IO[str] | None = None

    def acquire(self) -> None:
        """Write our pid and hold the lock.

        Raises:
            RuntimeError: If another live daemon holds the pid file.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.path, "a+")
        if HAS_FCNTL:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError:
                handle.close()
                raise RuntimeError(f"Sync daemon already running (pid file {self.path})") from None
        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        self._handle = handle

    @property
    def held(self) -> bool:
        return self._handle is not None

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            self.path.unlink(missing_ok=True)
        finally:
            if HAS_FCNTL:
                fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
            self._handle.close()
            self._handle = None


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def get_pid(config_dir: Path | None = None) -> int | None:
    """PID of the running daemon, or None.

    A pid file that no process holds locked is stale: it is deleted and None
    is returned.
    """
    path = pid_file_path(config_dir)
    try:
        content = path.read_text().strip()
    except OSError:
        return None
    if not content:
        # Daemon is between creating and writing the file.
        return None
    try:
        pid = int(content)
    except ValueError:
        path.unlink(missing_ok=True)
        return None

    if not HAS_FCNTL:
        if _pid_alive(pid):
            return pid
        path.unlink(missing_ok=True)
        return None

    try:
        handle = open(path)
    except OSError:
        return None
    with handle:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_SH | fcntl.LOCK_NB)
        except OSError:
            return pid
        try:
            path.unlink(missing_ok=True)
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    logger.debug("Removed stale pid file for pid %d", pid)
    return None


def is_daemon_running(config_dir: Path | None = None) -> bool:
    return get_pid(config_dir) is not None


# =============================================================================
# Formatting
# =============================================================================


def format_uptime(seconds: float) -> str:
    """Format a duration as ``2d 3h``, ``3h 5m``, ``5m 10s`` or ``10s``."""
    seconds = int(seconds)
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24
    if days > 0:
        return f"{days}d {hours % 24}h"
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


def format_ago(seconds: float) -> str:
    """Format an elapsed time as ``just now``, ``5m ago``, ``3h ago`` or ``2d ago``."""
    seconds = int(seconds)
    if seconds < 60:
        return "just now"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"


def seconds_since(iso_timestamp: str) -> float | None:
    """Seconds elapsed since an ISO timestamp, or None if unparsable."""
    try:
        moment = datetime.fromisoformat(iso_timestamp.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (datetime.now(timezone.utc) - moment).total_seconds()


# =============================================================================
# Scheduling
# =============================================================================


class SchedulerState(Enum):
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    RUNNING = "running"
    RUNNING_PENDING = "running_pending"


class SyncScheduler:
    """Debounces sync requests into runs, one at a time.

    ``request()`` during IDLE or DEBOUNCING (re)starts the debounce timer.
    During RUNNING it marks exactly one re-run as pending; further requests
    are absorbed. ``run_now()`` runs a callable immediately unless a run is
    in flight.
    """

    def __init__(
        self,
        run: Callable[[], None],
        debounce: float = DEFAULT_DEBOUNCE,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ) -> None:
        """Initialize the scheduler.

        Args:
            run: Callable executed for debounced requests.
            debounce: Quiet period in seconds before a run starts.
            timer_factory: Builds the debounce timer (``threading.Timer``).
        """
        self._run = run
        self.debounce = debounce
        self._timer_factory = timer_factory
        self._timer: threading.Timer | None = None
        self._state = SchedulerState.IDLE
        self._cond = threading.Condition()

    @property
    def state(self) -> SchedulerState:
        with self._cond:
            return self._state

    @property
    def is_running(self) -> bool:
        return self.state in (SchedulerState.RUNNING, SchedulerState.RUNNING_PENDING)

    def _set_state(self, state: SchedulerState) -> None:
        self._state = state
        self._cond.notify_all()

    def request(self) -> None:
        """Ask for a sync after the debounce window."""
        with self._cond:
            if self._state in (SchedulerState.RUNNING, SchedulerState.RUNNING_PENDING):
                self._set_state(SchedulerState.RUNNING_PENDING)
                return
            if self._timer is not None:
                self._timer.cancel()
            self._timer = self._timer_factory(self.debounce, self._fire)
            self._timer.daemon = True
            self._set_state(SchedulerState.DEBOUNCING)
            self._timer.start()

    def _fire(self) -> None:
        with self._cond:
            if self._state is not SchedulerState.DEBOUNCING:
                return
            self._timer = None
            self._set_state(SchedulerState.RUNNING)
        self._execute(self._run)

    def run_now(self, run: Callable[[], None]) -> bool:
        """Run ``run`` immediately on the calling thread.

        Returns:
            False (without running) if a run is already in flight.
        """
        with self._cond:
            if self._state in (SchedulerState.RUNNING, SchedulerState.RUNNING_PENDING):
                return False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._set_state(SchedulerState.RUNNING)
        self._execute(run)
        return True

    def _execute(self, run: Callable[[], None]) -> None:
        while True:
            try:
                run()
            except Exception:
                logger.exception("Scheduled sync failed")
            with self._cond:
                if self._state is SchedulerState.RUNNING_PENDING:
                    self._set_state(SchedulerState.RUNNING)
                    run = self._run
                    continue
                self._set_state(SchedulerState.IDLE)
                return

    def cancel(self) -> None:
        """Drop a pending debounce timer. A run in flight finishes."""
        with self._cond:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if self._state is SchedulerState.DEBOUNCING:
                self._set_state(SchedulerState.IDLE)
            elif self._state is SchedulerState.RUNNING_PENDING:
                self._set_state(SchedulerState.RUNNING)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no run is debouncing or in flight."""
        with self._cond:
            return self._cond.wait_for(lambda: self._state is SchedulerState.IDLE, timeout)


# =============================================================================
# File watching
# =============================================================================


def match_source(path: str | Path, sources: list[SyncSource]) -> SyncSource | None:
    """The source whose directory and glob cover path, if any."""
    candidate = Path(path)
    for source in sources:
        try:
            relative = candidate.relative_to(source.expanded_path)
        except ValueError:
            continue
        parts = relative.parts
        if not parts or any(p.startswith(".") or p in SKIPPED_DIRS for p in parts):
            continue
        if matches_glob(relative.as_posix(), source.glob):
            return source
    return None


class SourceEventHandler(FileSystemEventHandler):
    """Watchdog handler that reports changes to files matching a source glob."""

    def __init__(
        self, sources: list[SyncSource], on_change: Callable[[str, str], None]
    ) -> None:
        super().__init__()
        self.sources = sources
        self.on_change = on_change

    def _report(self, path: str | bytes, kind: str) -> None:
        if isinstance(path, bytes):
            path = os.fsdecode(path)
        if match_source(path, self.sources) is not None:
            self.on_change(path, kind)

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._report(event.src_path, "Added")

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._report(event.src_path, "Changed")

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory and getattr(event, "dest_path", None):
            self._report(event.dest_path, "Added")


# =============================================================================
# Daemon
# =============================================================================


def summarize_result(result: "SyncRunResult") -> dict[str, int]:
    return {
        "files_scanned": result.files_scanned,
        "files_processed": result.files_processed,
        "errors": result.error_count,
    }


class SyncDaemon:
    """Long-lived process driving debounced and periodic syncs."""

    def __init__(
        self,
        config: ConfigManager,
        run_sync: Callable[[bool], "SyncRunResult"],
        sources: list[SyncSource] | None = None,
        data_dir: Path | None = None,
        debounce: float = DEFAULT_DEBOUNCE,
        pull_interval: float = DEFAULT_PULL_INTERVAL,
        claim_pid: bool = True,
        run_initial: bool = True,
        pid_file: PidFile | None = None,
    ) -> None:
        """Initialize the daemon.

        Args:
            config: Config manager; its directory holds the daemon files.
            run_sync: Runs one sync; the argument says whether to git pull.
            sources: Enabled sync sources to watch.
            data_dir: Data directory, for logging only.
            debounce: Seconds of quiet before a file-change sync.
            pull_interval: Seconds between periodic pull-enabled syncs.
            claim_pid: Hold the pid file and write status (false for
                foreground `lore sync watch`).
            run_initial: Run a pull-enabled sync before watching.
            pid_file: Pid file the caller already acquired; created from
                the config directory when omitted.
        """
        self.config = config
        self.config_dir = config.base_path
        self.run_sync = run_sync
        self.sources = [s for s in (sources or []) if s.enabled]
        self.data_dir = data_dir
        self.pull_interval = pull_interval
        self.claim_pid = claim_pid
        self.run_initial = run_initial
        self.scheduler = SyncScheduler(self._file_change_sync, debounce=debounce)
        self.pid_file = pid_file or PidFile(pid_file_path(self.config_dir))
        self.started_at = utc_now_iso()
        self._observer: Any = None
        self._periodic: threading.Thread | None = None
        self._stop_event = threading.Event()

    # =========================================================================
    # Status
    # =========================================================================

    def update_status(self, result: "SyncRunResult | None" = None) -> None:
        """Rewrite daemon.status.json, keeping the last sync info."""
        if not self.claim_pid:
            return
        try:
            status = DaemonStatus(pid=os.getpid(), started_at=self.started_at)
            existing = read_status(self.config_dir)
            if existing is not None:
                status.last_sync = existing.last_sync
                status.last_sync_result = existing.last_sync_result
            if result is not None:
                status.last_sync = utc_now_iso()
                status.last_sync_result = summarize_result(result)
            write_status(status, self.config_dir)
        except OSError as e:
            logger.error("Failed to update status: %s", e)

    # =========================================================================
    # Syncs
    # =========================================================================

    def _sync(self, git_pull: bool, label: str) -> "SyncRunResult | None":
        try:
            result = self.run_sync(git_pull)
        except Exception as e:
            logger.error("%s failed: %s", label, e)
            self._record_failure()
            return None
        for title in (result.processing or {}).get("titles", []):
            logger.log(INDEX, title)
        if result.git_error:
            logger.warning("Git: %s", result.git_error)
        self.update_status(result)
        return result

    def _record_failure(self) -> None:
        if not self.claim_pid:
            return
        try:
            status = read_status(self.config_dir) or DaemonStatus(
                pid=os.getpid(), started_at=self.started_at
            )
            status.pid = os.getpid()
            status.started_at = self.started_at
            status.last_sync = utc_now_iso()
            result = dict(status.last_sync_result or {})
            result["errors"] = result.get("errors", 0) + 1
            result.setdefault("files_scanned", 0)
            result.setdefault("files_processed", 0)
            status.last_sync_result = result
            write_status(status, self.config_dir)
        except OSError as e:
            logger.error("Failed to update status: %s", e)

    def initial_sync(self) -> None:
        logger.log(SYNC, "Running initial sync...")
        result = self._sync(True, "Initial sync")
        if result is not None:
            logger.log(
                SYNC,
                "Initial sync complete: %d scanned, %d processed",
                result.files_scanned,
                result.files_processed,
            )

    def _file_change_sync(self) -> None:
        logger.log(SYNC, "File change detected, syncing...")
        result = self._sync(False, "Sync")
        if result is not None:
            logger.log(SYNC, "Sync complete: %d files processed", result.files_processed)

    def periodic_sync(self) -> bool:
        """Pull-enabled sync; skipped when a sync is already running."""

        def run() -> None:
            logger.log(PULL, "Periodic sync starting...")
            result = self._sync(True, "Periodic sync")
            if result is None:
                return
            if result.files_processed > 0:
                logger.log(PULL, "Found %d new file(s)", result.files_processed)
            else:
                logger.log(PULL, "Up to date")

        ran = self.scheduler.run_now(run)
        if not ran:
            logger.debug("Periodic sync skipped: sync in progress")
        return ran

    def _periodic_loop(self) -> None:
        while not self._stop_event.wait(self.pull_interval):
            self.periodic_sync()

    def on_file_event(self, path: str, kind: str) -> None:
        logger.log(FILE, "%s: %s", kind, os.path.basename(path))
        self.scheduler.request()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Claim the pid file, run the initial sync and start both loops."""
        if self.claim_pid:
            if not self.pid_file.held:
                self.pid_file.acquire()
            self.update_status()
        logger.log(START, "Daemon starting (PID: %d)", os.getpid())
        bridged = self.config.bridge_env()
        if bridged:
            logger.info("Loaded environment from config: %s", ", ".join(sorted(bridged)))
        if self.data_dir is not None:
            logger.info("Data directory: %s", self.data_dir)

        if not self.sources:
            logger.warning("No local sync sources configured")
            logger.info("Will still sync from remote")
        for source in self.sources:
            logger.info("Watching: %s (%s)", source.name, source.expanded_path)

        if self.run_initial:
            self.initial_sync()

        if self.sources:
            self._observer = Observer()
            handler = SourceEventHandler(self.sources, self.on_file_event)
            for source in self.sources:
                if source.expanded_path.is_dir():
                    self._observer.schedule(handler, str(source.expanded_path), recursive=True)
                else:
                    logger.warning("Source directory missing: %s", source.expanded_path)
            self._observer.start()
            logger.info("File watcher started")

        self._periodic = threading.Thread(
            target=self._periodic_loop, name="lore-periodic-sync", daemon=True
        )
        self._periodic.start()
        logger.info("Periodic sync every %g minutes", self.pull_interval / 60)
        logger.info("Daemon ready")

    def request_stop(self, reason: str = "") -> None:
        if reason:
            logger.log(STOP, "Daemon stopping (%s)", reason)
        self._stop_event.set()

    def shutdown(self) -> None:
        """Stop both loops and release the pid file."""
        self._stop_event.set()
        self.scheduler.cancel()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
        if self._periodic is not None:
            self._periodic.join(timeout=5)
            self._periodic = None
        self.pid_file.release()

    def serve_forever(self) -> None:
        """Run until SIGTERM or SIGINT."""

        def handle_signal(signum: int, frame: object) -> None:
            self.request_stop(signal.Signals(signum).name)

        signal.signal(signal.SIGTERM, handle_signal)
        signal.signal(signal.SIGINT, handle_signal)
        self.start()
        try:
            while not self._stop_event.wait(1.0):
                pass
        finally:
            self.shutdown()


# =============================================================================
# Process control (used by the CLI)
# =============================================================================


@dataclass
class DaemonStartResult:
    pid: int
    already_running: bool = False


def start_daemon_process(
    data_dir: Path, config_dir: Path | None = None, timeout: float = START_TIMEOUT
) -> DaemonStartResult | None:
    """Launch the daemon as a detached background process.

    Returns:
        The daemon pid (existing one when already running), or None when the
        process did not come up within timeout.
    """
    config_dir = config_dir or get_config_dir()
    existing = get_pid(config_dir)
    if existing:
        return DaemonStartResult(pid=existing, already_running=True)

    config_dir.mkdir(parents=True, exist_ok=True)
    env = {**os.environ, "LORE_CONFIG_DIR": str(config_dir)}
    subprocess.Popen(
        [sys.executable, "-m", "lore_knowledge.daemon", str(data_dir)],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        env=env,
        start_new_session=True,
    )

    deadline = time.time() + timeout
    while time.time() < deadline:
        time.sleep(0.2)
        pid = get_pid(config_dir)
        if pid:
            return DaemonStartResult(pid=pid)
    return None


def stop_daemon(config_dir: Path | None = None, timeout: float = STOP_TIMEOUT) -> int | None:
    """Send SIGTERM to the daemon and wait for it to release its pid file.

    Returns:
        The pid that was stopped, or None if no daemon was running.
    """
    pid = get_pid(config_dir)
    if pid is None:
        return None
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        pid_file_path(config_dir).unlink(missing_ok=True)
        return pid
    deadline = time.time() + timeout
    while time.time() < deadline and get_pid(config_dir) is not None:
        time.sleep(0.1)
    return pid


def restart_daemon(data_dir: Path, config_dir: Path | None = None) -> DaemonStartResult | None:
    stop_daemon(config_dir)
    return start_daemon_process(data_dir, config_dir)


def tail_log(log_file: Path, lines: int = 50) -> list[str]:
    """Last ``lines`` lines of the daemon log."""
    try:
        with open(log_file, encoding="utf-8", errors="replace") as f:
            return [line.rstrip("\n") for line in deque(f, maxlen=lines)]
    except OSError:
        return []


def main(argv: list[str] | None = None) -> int:
    """Daemon process entry point: ``python -m lore_knowledge.daemon [DATA_DIR]``.

    The pid file is written before anything else so the launching CLI sees
    the daemon as soon as the process is up.
    """
    from lore_knowledge._config import SyncSourceConfig
    from lore_knowledge._logging import configure_daemon_logging
    from lore_knowledge.orchestrator import SyncOptions, build_orchestrator

    argv = sys.argv[1:] if argv is None else argv
    config = ConfigManager()
    configure_daemon_logging(log_file_path(config.base_path))
    pid_file = PidFile(pid_file_path(config.base_path))
    try:
        pid_file.acquire()
    except (RuntimeError, OSError) as e:
        logger.error("%s", e)
        return 1

    try:
        config.bridge_env()
        data_dir = config.get_data_dir(argv[0] if argv else None)
        orchestrator = build_orchestrator(config, data_dir)
        concurrency = config.load_config().get("concurrency")
        sources = SyncSourceConfig(config.base_path).enabled_sources()

        def run_sync(git_pull: bool) -> "SyncRunResult":
            options = SyncOptions(git_pull=git_pull)
            if isinstance(concurrency, int) and concurrency > 0:
                options.concurrency = concurrency
            return orchestrator.run(options)

        daemon = SyncDaemon(
            config, run_sync, sources=sources, data_dir=data_dir, pid_file=pid_file
        )
        daemon.serve_forever()
    except Exception as e:
        logger.critical("Daemon crashed: %s", e)
        return 1
    finally:
        pid_file.release()
    return 0


if __name__ == "__main__":
    # Re-import so module loggers sit under the lore_knowledge namespace.
    from lore_knowledge.daemon import main as package_main

    sys.exit(package_main())
