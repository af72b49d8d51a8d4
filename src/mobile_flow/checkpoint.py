from __future__ import annotations

import fcntl
import hashlib
import logging
import os
import re
import sqlite3
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import AbstractContextManager, contextmanager
from pathlib import Path
from typing import Iterator

from pydantic import ValidationError

from .canonical import to_canonical_json
from .errors import CheckpointError, ThreadBusyError
from .models import Checkpoint

logger = logging.getLogger(__name__)

_LOCK_SUFFIX = ".lock"
_LEASE_SUFFIX = ".lease"
_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9_.-]+")


def encode_checkpoint(checkpoint: Checkpoint) -> str:
    """Canonical JSON blob for ``checkpoint``; identical checkpoints give identical bytes."""
    return to_canonical_json(checkpoint.model_dump(mode="json"))


def decode_checkpoint(blob: str, *, source: str) -> Checkpoint:
    try:
        return Checkpoint.model_validate_json(blob)
    except ValidationError as exc:
        raise CheckpointError(f"Checkpoint at {source} failed validation: {exc}") from exc


class Checkpointer(ABC):
    """Persists ``thread_id -> Checkpoint`` with at-most-one writer per thread.

    The executor holds ``lease(thread_id)`` for the whole of a ``run`` call;
    ``load``/``save`` are only ever issued while the lease is held.
    """

    @abstractmethod
    def load(self, thread_id: str) -> Checkpoint | None: ...

    @abstractmethod
    def save(self, thread_id: str, checkpoint: Checkpoint) -> None: ...

    @abstractmethod
    def delete(self, thread_id: str) -> bool: ...

    @abstractmethod
    def list_threads(self) -> list[str]: ...

    @abstractmethod
    def lease(self, thread_id: str, *, blocking: bool = True) -> AbstractContextManager[None]: ...

    @staticmethod
    def _check_identity(thread_id: str, checkpoint: Checkpoint) -> None:
        if checkpoint.thread_id != thread_id:
            raise CheckpointError(
                f"Checkpoint for thread {checkpoint.thread_id!r} cannot be saved under {thread_id!r}"
            )


class _ThreadLeases:
    """In-process per-key locks."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, thread_id: str, *, blocking: bool) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(thread_id, threading.Lock())
        if not lock.acquire(blocking=blocking):
            raise ThreadBusyError(f"Thread {thread_id!r} is already running")
        try:
            yield
        finally:
            lock.release()


class MemoryCheckpointer(Checkpointer):
    """Dictionary-backed store for tests; copies on every save and load."""

    def __init__(self) -> None:
        self._records: dict[str, Checkpoint] = {}
        self._records_lock = threading.Lock()
        self._leases = _ThreadLeases()

    def load(self, thread_id: str) -> Checkpoint | None:
        with self._records_lock:
            stored = self._records.get(thread_id)
            return None if stored is None else stored.model_copy(deep=True)

    def save(self, thread_id: str, checkpoint: Checkpoint) -> None:
        self._check_identity(thread_id, checkpoint)
        with self._records_lock:
            self._records[thread_id] = checkpoint.model_copy(deep=True)

    def delete(self, thread_id: str) -> bool:
        with self._records_lock:
            return self._records.pop(thread_id, None) is not None

    def list_threads(self) -> list[str]:
        with self._records_lock:
            return sorted(self._records)

    @contextmanager
    def lease(self, thread_id: str, *, blocking: bool = True) -> Iterator[None]:
        with self._leases.hold(thread_id, blocking=blocking):
            yield


# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive lock on ``path``'s ``.lock`` sidecar.

    The data file itself is replaced with ``os.replace`` so the lock must
    live on a separate handle in the same directory.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


@contextmanager
def _flock_lease(lease_path: Path, thread_id: str, *, blocking: bool) -> Iterator[None]:
    """Exclusive ``flock`` on ``lease_path``; held across processes and threads alike."""
    lease_path.parent.mkdir(parents=True, exist_ok=True)
    with lease_path.open("a+", encoding="utf-8") as lease_handle:
        flags = fcntl.LOCK_EX if blocking else fcntl.LOCK_EX | fcntl.LOCK_NB
        try:
            fcntl.flock(lease_handle.fileno(), flags)
        except BlockingIOError as exc:
            raise ThreadBusyError(f"Thread {thread_id!r} is already running") from exc
        try:
            yield
        finally:
            fcntl.flock(lease_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write ``content`` to ``path`` via a same-directory temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_json(path: Path) -> str:
    """Read a checkpoint file, raising ``CheckpointError`` if it is unreadable or empty."""
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise CheckpointError(f"Checkpoint at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise CheckpointError(f"Checkpoint at {path} is empty")
    return text


def thread_file_stem(thread_id: str) -> str:
    """Filesystem-safe, collision-free stem for a thread id."""
    readable = _UNSAFE_CHARS_RE.sub("-", thread_id).strip("-.")[:64] or "thread"
    digest = hashlib.sha256(thread_id.encode("utf-8")).hexdigest()[:12]
    return f"{readable}-{digest}"


class FileCheckpointer(Checkpointer):
    """One canonical JSON file per thread under ``root``.

    Leases are ``flock`` locks on a per-thread ``.lease`` file, so they
    serialize runs across processes as well as threads.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, thread_id: str) -> Path:
        return self.root / f"{thread_file_stem(thread_id)}.json"

    def load(self, thread_id: str) -> Checkpoint | None:
        path = self._path(thread_id)
        with _locked_file(path):
            if not path.is_file():
                return None
            checkpoint = decode_checkpoint(_safe_read_json(path), source=str(path))
        if checkpoint.thread_id != thread_id:
            raise CheckpointError(f"Checkpoint at {path} belongs to thread {checkpoint.thread_id!r}")
        return checkpoint

    def save(self, thread_id: str, checkpoint: Checkpoint) -> None:
        self._check_identity(thread_id, checkpoint)
        path = self._path(thread_id)
        with _locked_file(path):
            _atomic_write_text(path, encode_checkpoint(checkpoint))
        logger.debug("Saved checkpoint thread=%s status=%s path=%s", thread_id, checkpoint.status.value, path)

    def delete(self, thread_id: str) -> bool:
        path = self._path(thread_id)
        with _locked_file(path):
            if not path.is_file():
                return False
            path.unlink()
        return True

    def list_threads(self) -> list[str]:
        thread_ids = []
        for path in sorted(self.root.glob("*.json")):
            checkpoint = decode_checkpoint(_safe_read_json(path), source=str(path))
            thread_ids.append(checkpoint.thread_id)
        return sorted(thread_ids)

    @contextmanager
    def lease(self, thread_id: str, *, blocking: bool = True) -> Iterator[None]:
        lease_path = self.root / f"{thread_file_stem(thread_id)}{_LEASE_SUFFIX}"
        with _flock_lease(lease_path, thread_id, blocking=blocking):
            yield


class SqliteCheckpointer(Checkpointer):
    """Single-table sqlite store.

    Leases are ``flock`` locks on per-thread files in a ``<db>.leases``
    directory beside the database, so separate processes sharing one
    database file serialize runs of the same thread. An in-memory database
    is private to its connection and falls back to in-process locks.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = str(path)
        self._lease_dir: Path | None = None
        if self.path != ":memory:":
            db_path = Path(self.path)
            db_path.parent.mkdir(parents=True, exist_ok=True)
            self._lease_dir = db_path.with_name(db_path.name + ".leases")
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn_lock = threading.Lock()
        self._leases = _ThreadLeases()
        with self._conn_lock, self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS checkpoints (
                    thread_id TEXT PRIMARY KEY,
                    workflow TEXT NOT NULL,
                    status TEXT NOT NULL,
                    blob TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

    def load(self, thread_id: str) -> Checkpoint | None:
        with self._conn_lock:
            row = self._conn.execute(
                "SELECT blob FROM checkpoints WHERE thread_id = ?", (thread_id,)
            ).fetchone()
        if row is None:
            return None
        return decode_checkpoint(row[0], source=f"{self.path}#{thread_id}")

    def save(self, thread_id: str, checkpoint: Checkpoint) -> None:
        self._check_identity(thread_id, checkpoint)
        blob = encode_checkpoint(checkpoint)
        with self._conn_lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO checkpoints (thread_id, workflow, status, blob, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(thread_id) DO UPDATE SET
                    workflow = excluded.workflow,
                    status = excluded.status,
                    blob = excluded.blob,
                    updated_at = excluded.updated_at
                """,
                (
                    thread_id,
                    checkpoint.workflow,
                    checkpoint.status.value,
                    blob,
                    checkpoint.updated_at.isoformat(),
                ),
            )

    def delete(self, thread_id: str) -> bool:
        with self._conn_lock, self._conn:
            cursor = self._conn.execute("DELETE FROM checkpoints WHERE thread_id = ?", (thread_id,))
        return cursor.rowcount > 0

    def list_threads(self) -> list[str]:
        with self._conn_lock:
            rows = self._conn.execute("SELECT thread_id FROM checkpoints ORDER BY thread_id").fetchall()
        return [row[0] for row in rows]

    @contextmanager
    def lease(self, thread_id: str, *, blocking: bool = True) -> Iterator[None]:
        if self._lease_dir is None:
            with self._leases.hold(thread_id, blocking=blocking):
                yield
            return
        lease_path = self._lease_dir / f"{thread_file_stem(thread_id)}{_LEASE_SUFFIX}"
        with _flock_lease(lease_path, thread_id, blocking=blocking):
            yield

    def close(self) -> None:
        with self._conn_lock:
            self._conn.close()


def build_checkpointer(backend: str, *, state_store: Path, checkpoint_db: Path) -> Checkpointer:
    """Construct the checkpointer named by ``MOBILE_FLOW_CHECKPOINT_BACKEND``."""
    if backend == "memory":
        return MemoryCheckpointer()
    if backend == "sqlite":
        return SqliteCheckpointer(checkpoint_db)
    if backend == "file":
        return FileCheckpointer(state_store / "checkpoints")
    raise ValueError(f"Unknown checkpoint backend: {backend!r}")
