"""State store backends.

A store keeps exactly one ``State`` record and guards it two ways:

- an exclusive lock (``acquire_lock``) so two plan/apply sequences never run
  against the same lineage at once
- optimistic versioning on ``write``: the caller presents the serial it
  read, and the write is rejected with ``StaleSerialError`` if the stored
  serial (or lineage) moved on in the meantime
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import socket
import sys
import tempfile
import threading
import time
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, TYPE_CHECKING, Protocol

from stackform.core.state import State, new_lineage
from stackform.errors import LockConflictError, StaleSerialError, StateConflictError

if TYPE_CHECKING:
    from types import TracebackType

try:
    import fcntl  # type: ignore[attr-defined]
except ImportError:  # pragma: no cover
    fcntl = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1


class LockHandle(Protocol):
    lock_id: str

    def release(self) -> None: ...

    def __enter__(self) -> LockHandle: ...

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None: ...


class StateStore(Protocol):
    """Durable home of one state record."""

    def acquire_lock(self, timeout: float = 0.0) -> LockHandle:
        """Take the exclusive lock, waiting up to *timeout* seconds.

        Raises:
            LockConflictError: If the lock is still held after *timeout*.
        """

    def read(self) -> State:
        """Return the current record (a fresh, empty lineage if none exists)."""

    def write(self, record: State, expected_serial: int) -> int:
        """Persist *record* if the stored serial still equals *expected_serial*.

        Returns:
            The new serial (``expected_serial + 1``).

        Raises:
            StaleSerialError: If the stored serial or lineage has moved on.
        """


def _lock_info(lock_id: str) -> dict[str, object]:
    return {
        "id": lock_id,
        "who": f"{os.environ.get('USER', 'unknown')}@{socket.gethostname()}",
        "pid": os.getpid(),
        "created": datetime.now(UTC).isoformat(),
    }


def _check_write(current: State | None, record: State, expected_serial: int) -> int:
    if current is not None and current.lineage != record.lineage:
        raise StaleSerialError(
            f"State lineage changed ({record.lineage} -> {current.lineage}); re-run plan",
            expected=expected_serial,
            actual=current.serial,
        )
    actual = current.serial if current is not None else 0
    if actual != expected_serial:
        raise StaleSerialError(
            f"State serial is {actual}, expected {expected_serial}; re-run plan",
            expected=expected_serial,
            actual=actual,
        )
    return expected_serial + 1


# ---------------------------------------------------------------------------
# Local file backend
# ---------------------------------------------------------------------------


class FileLockHandle:
    """Exclusive lock on ``<state>.lock``; the file carries holder info."""

    def __init__(self, lock_path: Path) -> None:
        self._lock_path = lock_path
        self._file: IO[str] | None = None
        self.lock_id = str(uuid.uuid4())

    def acquire(self, timeout: float) -> FileLockHandle:
        # Keep fd open for lifetime of the lock.
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = self._lock_path.open("a+", encoding="utf-8")
        deadline = time.monotonic() + max(timeout, 0.0)
        try:
            while not self._try_acquire():
                if time.monotonic() >= deadline:
                    raise LockConflictError(
                        f"State is locked: {self._lock_path}", holder=self._holder()
                    )
                time.sleep(_POLL_INTERVAL)
        except Exception:
            try:
                self._file.close()
            finally:
                self._file = None
            raise

        self._file.seek(0)
        self._file.truncate()
        self._file.write(json.dumps(_lock_info(self.lock_id)))
        self._file.flush()
        logger.debug("Acquired state lock %s (%s)", self._lock_path, self.lock_id)
        return self

    def _holder(self) -> str | None:
        try:
            info = json.loads(self._lock_path.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError):
            return None
        who = info.get("who")
        return f"{who} pid={info.get('pid')} since {info.get('created')}" if who else None

    def _try_acquire(self) -> bool:
        if self._file is None:
            raise StateConflictError("Lock file is not open")

        if fcntl is not None:
            try:
                fcntl.flock(self._file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                return False
            return True

        if sys.platform == "win32":  # pragma: no cover
            import msvcrt

            try:
                msvcrt.locking(self._file.fileno(), msvcrt.LK_NBLCK, 1)
            except OSError:
                return False
            return True

        raise StateConflictError("State locking is not supported on this platform")

    def release(self) -> None:
        if self._file is None:
            return
        try:
            self._file.seek(0)
            self._file.truncate()
            self._file.flush()
            if fcntl is not None:
                fcntl.flock(self._file.fileno(), fcntl.LOCK_UN)
            elif sys.platform == "win32":  # pragma: no cover
                import msvcrt

                msvcrt.locking(self._file.fileno(), msvcrt.LK_UNLCK, 1)
        finally:
            self._file.close()
            self._file = None
            logger.debug("Released state lock %s", self._lock_path)

    def __enter__(self) -> FileLockHandle:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


class LocalStateStore:
    """JSON state file with atomic writes, a ``.backup`` copy and a lock file."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._initial: State | None = None

    @property
    def path(self) -> Path:
        return self._path

    def acquire_lock(self, timeout: float = 0.0) -> FileLockHandle:
        return FileLockHandle(Path(str(self._path) + ".lock")).acquire(timeout)

    def _load(self) -> State | None:
        try:
            content = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return State.model_validate_json(content)

    def read(self) -> State:
        state = self._load()
        if state is not None:
            logger.debug("State loaded from %s: serial=%d", self._path, state.serial)
            return state
        # Repeated reads of a missing file must agree on one lineage.
        if self._initial is None:
            self._initial = State()
            logger.debug("No state at %s; new lineage %s", self._path, self._initial.lineage)
        return self._initial.model_copy(deep=True)

    def write(self, record: State, expected_serial: int) -> int:
        new_serial = _check_write(self._load(), record, expected_serial)
        self._save(record.model_copy(update={"serial": new_serial}))
        return new_serial

    def reinitialize(self) -> State:
        """Start a new lineage, keeping the previous record as ``.backup``."""
        state = State(lineage=new_lineage())
        self._save(state)
        self._initial = None
        logger.info("State reinitialized with lineage %s", state.lineage)
        return state

    def _save(self, record: State) -> None:
        """Write atomically (temp file + rename), keeping a ``.backup`` of the previous record."""
        path = self._path
        path.parent.mkdir(parents=True, exist_ok=True)

        backup_path = Path(str(path) + ".backup")
        # Avoid TOCTOU race between exists() and read_bytes().
        with contextlib.suppress(FileNotFoundError):
            backup_path.write_bytes(path.read_bytes())

        fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
        tmp_file = Path(tmp_path)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(record.to_json())
                f.flush()
                os.fsync(f.fileno())
            tmp_file.replace(path)
        finally:
            with contextlib.suppress(FileNotFoundError):
                tmp_file.unlink()
        logger.debug("State saved: serial=%d path=%s", record.serial, path)


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class MemoryLockHandle:
    def __init__(self, lock: threading.Lock) -> None:
        self._lock: threading.Lock | None = lock
        self.lock_id = str(uuid.uuid4())

    def release(self) -> None:
        if self._lock is not None:
            self._lock.release()
            self._lock = None

    def __enter__(self) -> MemoryLockHandle:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


class InMemoryStateStore:
    """Process-local store; records are deep-copied in and out."""

    def __init__(self, initial: State | None = None) -> None:
        self._record = (initial or State()).model_copy(deep=True)
        self._lock = threading.Lock()
        self._guard = threading.Lock()
        self.writes = 0

    def acquire_lock(self, timeout: float = 0.0) -> MemoryLockHandle:
        acquired = (
            self._lock.acquire(blocking=False)
            if timeout <= 0
            else self._lock.acquire(timeout=timeout)
        )
        if not acquired:
            raise LockConflictError("State is locked (in-memory store)")
        return MemoryLockHandle(self._lock)

    def read(self) -> State:
        with self._guard:
            return self._record.model_copy(deep=True)

    def write(self, record: State, expected_serial: int) -> int:
        with self._guard:
            new_serial = _check_write(self._record, record, expected_serial)
            self._record = record.model_copy(update={"serial": new_serial}, deep=True)
            self.writes += 1
            return new_serial
