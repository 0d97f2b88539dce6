"""Advisory file locks shared by the CLI and the sync daemon."""

import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

# File locking - platform specific
if sys.platform != "win32":
    import fcntl

    HAS_FCNTL = True
else:
    HAS_FCNTL = False

DEFAULT_FILE_LOCK_TIMEOUT = 30.0


@contextmanager
def file_lock(lock_file: Path, timeout: float | None = None) -> Iterator[None]:
    """Acquire an exclusive advisory lock on lock_file.

    Uses fcntl on Unix systems. Falls back to an exclusive-create lock file
    on Windows.

    Args:
        lock_file: Path of the lock file (created if missing).
        timeout: Maximum seconds to wait for the lock.
            Defaults to DEFAULT_FILE_LOCK_TIMEOUT.

    Yields:
        None when the lock is acquired.

    Raises:
        TimeoutError: If the lock cannot be acquired within timeout.
    """
    if timeout is None:
        timeout = DEFAULT_FILE_LOCK_TIMEOUT
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    start_time = time.time()

    if HAS_FCNTL:
        lock_fd = open(lock_file, "w")
        try:
            while True:
                try:
                    fcntl.flock(lock_fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except OSError:
                    if time.time() - start_time > timeout:
                        raise TimeoutError(
                            f"Could not acquire lock on {lock_file} within {timeout} seconds"
                        ) from None
                    time.sleep(0.1)
            try:
                yield
            finally:
                fcntl.flock(lock_fd.fileno(), fcntl.LOCK_UN)
        finally:
            lock_fd.close()
    else:
        while True:
            try:
                lock_file.open("x").close()
                break
            except FileExistsError:
                if time.time() - start_time > timeout:
                    raise TimeoutError(
                        f"Could not acquire lock on {lock_file} within {timeout} seconds"
                    ) from None
                time.sleep(0.1)
        try:
            yield
        finally:
            lock_file.unlink(missing_ok=True)
