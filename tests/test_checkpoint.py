from __future__ import annotations

import os
import subprocess
import sys
import threading
from pathlib import Path

import pytest

from mobile_flow.canonical import state_fingerprint
from mobile_flow.checkpoint import (
    Checkpointer,
    FileCheckpointer,
    MemoryCheckpointer,
    SqliteCheckpointer,
    build_checkpointer,
    encode_checkpoint,
    thread_file_stem,
)
from mobile_flow.errors import CheckpointError, ThreadBusyError
from mobile_flow.models import Checkpoint, CheckpointStatus, PendingInterrupt

REPO_ROOT = Path(__file__).resolve().parents[1]
BACKENDS = ["memory", "file", "sqlite"]


def _make(kind: str, tmp_path: Path) -> Checkpointer:
    return build_checkpointer(
        kind,
        state_store=tmp_path / "store",
        checkpoint_db=tmp_path / "store" / "checkpoints.sqlite",
    )


def _interrupted(thread_id: str) -> Checkpoint:
    return Checkpoint(
        thread_id=thread_id,
        workflow="demo",
        status=CheckpointStatus.INTERRUPTED,
        state={"name": "café", "items": [1, 2.5, {"nested": None}]},
        next_node="ask",
        pending=PendingInterrupt(interrupt_id="abc123", node="ask", prompt={"q": "?"}, resume_fields=["answer"]),
        step=4,
    )


@pytest.mark.parametrize("kind", BACKENDS)
def test_round_trip_preserves_checkpoint(kind: str, tmp_path: Path) -> None:
    checkpointer = _make(kind, tmp_path)
    checkpoint = _interrupted("thread/1")

    assert checkpointer.load("thread/1") is None
    checkpointer.save("thread/1", checkpoint)

    loaded = checkpointer.load("thread/1")
    assert loaded == checkpoint
    assert encode_checkpoint(loaded) == encode_checkpoint(checkpoint)
    assert loaded is not None
    assert state_fingerprint(loaded.state) == state_fingerprint(checkpoint.state)


@pytest.mark.parametrize("kind", BACKENDS)
def test_list_and_delete_threads(kind: str, tmp_path: Path) -> None:
    checkpointer = _make(kind, tmp_path)
    for thread_id in ("b", "a"):
        checkpointer.save(thread_id, _interrupted(thread_id))

    assert checkpointer.list_threads() == ["a", "b"]
    assert checkpointer.delete("a") is True
    assert checkpointer.delete("a") is False
    assert checkpointer.list_threads() == ["b"]


@pytest.mark.parametrize("kind", BACKENDS)
def test_save_rejects_checkpoint_for_another_thread(kind: str, tmp_path: Path) -> None:
    checkpointer = _make(kind, tmp_path)

    with pytest.raises(CheckpointError):
        checkpointer.save("one", _interrupted("two"))


@pytest.mark.parametrize("kind", BACKENDS)
def test_non_blocking_lease_raises_when_held(kind: str, tmp_path: Path) -> None:
    checkpointer = _make(kind, tmp_path)
    acquired, release = threading.Event(), threading.Event()

    def hold() -> None:
        with checkpointer.lease("busy"):
            acquired.set()
            release.wait(timeout=5)

    holder = threading.Thread(target=hold)
    holder.start()
    try:
        assert acquired.wait(timeout=5)
        with pytest.raises(ThreadBusyError):
            with checkpointer.lease("busy", blocking=False):
                pass
        with checkpointer.lease("other", blocking=False):
            pass
    finally:
        release.set()
        holder.join(timeout=5)

    with checkpointer.lease("busy", blocking=False):
        pass


def test_file_checkpoint_is_canonical_json(tmp_path: Path) -> None:
    checkpointer = FileCheckpointer(tmp_path)
    checkpoint = _interrupted("canonical")
    checkpointer.save("canonical", checkpoint)

    path = tmp_path / f"{thread_file_stem('canonical')}.json"
    assert path.read_text(encoding="utf-8") == encode_checkpoint(checkpoint)


def test_corrupt_file_checkpoint_raises(tmp_path: Path) -> None:
    checkpointer = FileCheckpointer(tmp_path)
    (tmp_path / f"{thread_file_stem('broken')}.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(CheckpointError):
        checkpointer.load("broken")


def test_thread_file_stem_is_safe_and_distinct() -> None:
    first = thread_file_stem("../etc/passwd")
    second = thread_file_stem("..-etc-passwd")

    assert "/" not in first
    assert first != second


def test_sqlite_checkpoints_survive_reopen(tmp_path: Path) -> None:
    db = tmp_path / "checkpoints.sqlite"
    first = SqliteCheckpointer(db)
    first.save("durable", _interrupted("durable"))
    first.close()

    second = SqliteCheckpointer(db)
    try:
        loaded = second.load("durable")
    finally:
        second.close()

    assert loaded is not None
    assert loaded.step == 4


def test_memory_checkpointer_returns_copies() -> None:
    checkpointer = MemoryCheckpointer()
    checkpointer.save("copy", _interrupted("copy"))

    loaded = checkpointer.load("copy")
    assert loaded is not None
    loaded.state["name"] = "changed"

    reloaded = checkpointer.load("copy")
    assert reloaded is not None
    assert reloaded.state["name"] == "café"


def test_checkpoint_status_invariants() -> None:
    with pytest.raises(ValueError):
        Checkpoint(thread_id="t", workflow="w", status=CheckpointStatus.INTERRUPTED)
    with pytest.raises(ValueError):
        Checkpoint(thread_id="t", workflow="w", status=CheckpointStatus.RUNNING)


def test_unknown_backend_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="Unknown checkpoint backend"):
        _make("redis", tmp_path)


def test_state_fingerprint_ignores_key_order_but_not_values() -> None:
    state = {"platform": "Android", "errors": ["a"], "attempt": {"number": 1, "max": 3}}
    reordered = {"attempt": {"max": 3, "number": 1}, "errors": ["a"], "platform": "Android"}

    assert state_fingerprint(state) == state_fingerprint(reordered)
    assert state_fingerprint(state) != state_fingerprint({**state, "errors": ["a", "b"]})


def test_sqlite_lease_is_shared_by_every_handle_on_the_database(tmp_path: Path) -> None:
    db = tmp_path / "shared.sqlite"
    first, second = SqliteCheckpointer(db), SqliteCheckpointer(db)
    try:
        with first.lease("t1", blocking=False):
            with pytest.raises(ThreadBusyError):
                with second.lease("t1", blocking=False):
                    pass
            with second.lease("t2", blocking=False):
                pass
        with second.lease("t1", blocking=False):
            pass
    finally:
        first.close()
        second.close()


def test_sqlite_lease_held_by_another_process_rejects_runs(tmp_path: Path) -> None:
    db = tmp_path / "shared.sqlite"
    holder_code = (
        "import sys\n"
        "from mobile_flow.checkpoint import SqliteCheckpointer\n"
        f"with SqliteCheckpointer({str(db)!r}).lease('t1'):\n"
        "    print('held', flush=True)\n"
        "    sys.stdin.read()\n"
    )
    env = os.environ.copy()
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(REPO_ROOT / "src"), env.get("PYTHONPATH")]))
    holder = subprocess.Popen(
        [sys.executable, "-c", holder_code],
        cwd=REPO_ROOT,
        env=env,
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        text=True,
    )
    checkpointer = SqliteCheckpointer(db)
    try:
        assert holder.stdout is not None
        assert holder.stdout.readline().strip() == "held"
        with pytest.raises(ThreadBusyError):
            with checkpointer.lease("t1", blocking=False):
                pass
    finally:
        assert holder.stdin is not None
        holder.stdin.close()
        holder.wait(timeout=10)

    try:
        with checkpointer.lease("t1", blocking=False):
            pass
    finally:
        checkpointer.close()
