"""
Named exclusive locks shared between processes.

Locks live in a directory (the coordination domain). A lock is held by
atomically creating ``<name>.lock`` with O_CREAT | O_EXCL and flock-ing it;
the file records the owner PID so that locks left behind by a dead process
can be broken.
"""

import asyncio
import contextlib
import os
import re
import sys
import time
from pathlib import Path
from typing import AsyncIterator, Callable, Optional, Union

import psutil

from .errors import LockError, LockTimeoutError
from .logging import LogEvent, LogHandler, LogLevel, StructuredLogger

Release = Callable[[], None]

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]")


def default_lock_dir() -> Path:
    """``$CROSSLINK_LOCK_DIR`` or ``~/.crosslink/locks``."""
    configured = os.environ.get("CROSSLINK_LOCK_DIR")
    if configured:
        return Path(configured)
    return Path.home() / ".crosslink" / "locks"


def _is_process_alive(pid: int) -> bool:
    """Check if process is still alive."""
    try:
        return psutil.pid_exists(pid)
    except Exception:
        return False


def _lock_file(fd: int):
    if sys.platform == "win32":
        import msvcrt

        msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
    else:
        import fcntl

        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)


def _unlock_file(fd: int):
    if sys.platform == "win32":
        import msvcrt

        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
    else:
        import fcntl

        fcntl.flock(fd, fcntl.LOCK_UN)


class LockDomain:
    """
    Exclusive locks scoped to one directory.

    Two modes:

        # Scoped resource
        async with domain.hold("leader"):
            ...

        release = await domain.acquire("leader")
        try:
            ...
        finally:
            release()

        # Stream: yields once when granted, releases when closed.
        # The stream never ends by itself; leave it with break inside
        # aclosing (or cancel the consuming task).
        async with contextlib.aclosing(domain.observe("leader")) as stream:
            async for _ in stream:
                await serve_as_leader()
                break

    Cancelling a task that is waiting for a lock abandons the request; the
    lock is never granted to it.
    """

    def __init__(
        self,
        directory: Optional[Union[str, Path]] = None,
        poll_interval: float = 0.05,
        log: bool = False,
        log_handler: Optional[LogHandler] = None,
        log_level: LogLevel = LogLevel.INFO,
    ):
        self.directory = Path(directory) if directory else default_lock_dir()
        self.poll_interval = poll_interval
        self._logger = StructuredLogger.create(
            log=log, handler=log_handler, level=log_level, component="lock"
        )

    def path_for(self, name: str) -> Path:
        if not name:
            raise ValueError("Lock name must not be empty")
        return self.directory / f"{_SAFE_NAME.sub('_', name)}.lock"

    def is_held(self, name: str) -> bool:
        return self.path_for(name).exists()

    def _try_acquire(self, name: str) -> Optional[Release]:
        """One non-blocking attempt. Returns a release callable or None."""
        path = self.path_for(name)
        self.directory.mkdir(parents=True, exist_ok=True)

        try:
            # Atomic file creation - fails if file already exists
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            self._break_if_stale(name, path)
            return None

        try:
            _lock_file(fd)
            os.write(fd, str(os.getpid()).encode())
        except OSError:
            os.close(fd)
            with contextlib.suppress(OSError):
                os.unlink(path)
            return None

        released = False

        def release():
            nonlocal released
            if released:
                return
            released = True
            try:
                _unlock_file(fd)
            except OSError:
                pass
            finally:
                os.close(fd)
                with contextlib.suppress(OSError):
                    os.unlink(path)
            self._logger.lock_released(name)

        self._logger.lock_acquired(name)
        return release

    def _break_if_stale(self, name: str, path: Path):
        """
        Remove a lock file whose owner process no longer exists.

        The file is only unlinked while we hold its file lock and the path
        still names the file we opened, so a lock file created by another
        contender in the meantime is never removed.
        """
        try:
            fd = os.open(path, os.O_RDWR)
        except OSError:
            return

        try:
            try:
                _lock_file(fd)
            except OSError:
                # Locked by a live holder
                return

            try:
                content = os.read(fd, 64).decode(errors="replace").strip()
                if not content:
                    # Owner is between create and write
                    return
                try:
                    pid = int(content)
                except ValueError:
                    return
                if pid == os.getpid() or _is_process_alive(pid):
                    return

                try:
                    if os.stat(path).st_ino != os.fstat(fd).st_ino:
                        return
                except OSError:
                    return

                self._logger.warn(
                    LogEvent.LOCK_BROKEN,
                    f"Breaking stale lock {name} held by dead process {pid}",
                    lock_name=name,
                    metadata={"pid": pid},
                )
                with contextlib.suppress(OSError):
                    os.unlink(path)
            finally:
                with contextlib.suppress(OSError):
                    _unlock_file(fd)
        finally:
            os.close(fd)

    async def acquire(
        self,
        name: str,
        timeout: Optional[float] = None,
        if_available: bool = False,
    ) -> Optional[Release]:
        """
        Wait for the lock and return an idempotent release callable.

        Args:
            name: Lock name
            timeout: Seconds to wait before raising LockTimeoutError
            if_available: Return None at once instead of waiting

        Raises:
            LockTimeoutError: The lock was not granted in time
            LockError: The lock directory cannot be used
        """
        deadline = None if timeout is None else time.monotonic() + timeout

        while True:
            try:
                release = self._try_acquire(name)
            except OSError as e:
                raise LockError(f"Could not use lock directory {self.directory}: {e}")

            if release is not None:
                return release
            if if_available:
                return None
            if deadline is not None and time.monotonic() >= deadline:
                raise LockTimeoutError(
                    f"Could not acquire lock '{name}' within {timeout}s"
                )
            await asyncio.sleep(self.poll_interval)

    @contextlib.asynccontextmanager
    async def hold(self, name: str, timeout: Optional[float] = None):
        """Hold the lock for the body of an ``async with`` block."""
        release = await self.acquire(name, timeout=timeout)
        try:
            yield
        finally:
            release()

    async def observe(
        self, name: str, timeout: Optional[float] = None
    ) -> AsyncIterator[None]:
        """
        Yield once when the lock is granted, then hold it until closed.

        Nothing is requested until iteration starts.
        """
        release = await self.acquire(name, timeout=timeout)
        try:
            yield None
            # Held until the consumer closes or cancels
            await asyncio.get_running_loop().create_future()
        finally:
            release()


async def acquire_lock(name: str, **options) -> Optional[Release]:
    """Acquire ``name`` in the default lock domain."""
    return await LockDomain().acquire(name, **options)


def observe_lock(name: str, timeout: Optional[float] = None) -> AsyncIterator[None]:
    """Stream-mode lock in the default lock domain."""
    return LockDomain().observe(name, timeout=timeout)
