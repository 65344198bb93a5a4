import json
import os
from pathlib import Path

import pytest

from specflow.errors import SessionLocked, SessionNotFound, SessionStateError
from specflow.state import AuditLog, Blocker, Checkpoint, CheckpointStore, ContextStore
from specflow.state.audit import active_step, derive_status, phases_completed, tasks_completed
from specflow.state.sessions import SessionRecord, SessionStore, new_session_id


def _record(session_id: str = "wf-20260101000000-abcdef12") -> SessionRecord:
    return SessionRecord(
        session_id=session_id,
        spec_path="/repo/docs/feature.md",
        branch_name="specflow/x",
        worktree_path="/repo",
    )


def test_context_snapshot_excludes_transient_keys() -> None:
    ctx = ContextStore()
    ctx.set("tasks", [{"id": "T1"}])
    ctx.set("_scratch", object())

    snapshot = ctx.snapshot()

    assert snapshot == {"tasks": [{"id": "T1"}]}
    assert "_scratch" in ctx


def test_context_restore_is_independent_of_source() -> None:
    variables = {"issueIds": {"T1": "000001"}}
    ctx = ContextStore.restore(variables)

    ctx.get("issueIds")["T2"] = "000002"

    assert variables == {"issueIds": {"T1": "000001"}}
    assert ctx.get("issueIds") == {"T1": "000001", "T2": "000002"}


def test_audit_log_appends_and_rereads(tmp_path: Path) -> None:
    log = AuditLog(tmp_path / "audit.jsonl")
    log.record("init", "started")
    log.record("init", "completed")
    reader = log.read_all()

    first = [entry.step for entry in reader]
    log.record("implement:T1", "started", {"title": "First"})
    second = [(entry.step, entry.status) for entry in reader]

    assert first == ["init", "init"]
    assert second[-1] == ("implement:T1", "started")
    entries = list(reader)
    assert entries[-1].phase == "implement"
    assert entries[-1].task_id == "T1"
    assert entries[-1].metadata == {"title": "First"}


def test_audit_reader_skips_torn_lines(tmp_path: Path) -> None:
    path = tmp_path / "audit.jsonl"
    log = AuditLog(path)
    log.record("init", "completed")
    with path.open("a", encoding="utf-8") as handle:
        handle.write('{"step": "analyze", "sta\n')
    log.record("analyze", "started")

    assert [entry.step for entry in log.read_all()] == ["init", "analyze"]


def test_audit_log_rejects_unknown_status(tmp_path: Path) -> None:
    log = AuditLog(tmp_path / "audit.jsonl")

    with pytest.raises(ValueError):
        log.record("init", "skipped")  # type: ignore[arg-type]


def test_status_derivation_from_journal(tmp_path: Path) -> None:
    log = AuditLog(tmp_path / "audit.jsonl")
    log.record("init", "started")
    assert derive_status(log.read_all()) == "running"

    log.record("init", "completed")
    log.record("analyze", "failed", {"paused": True, "reason": "pause requested"})
    assert derive_status(log.read_all()) == "paused"

    log.record("resume", "completed")
    assert derive_status(log.read_all()) == "running"

    log.record("complete", "completed")
    assert derive_status(log.read_all()) == "completed"


def test_journal_summaries(tmp_path: Path) -> None:
    log = AuditLog(tmp_path / "audit.jsonl")
    for step, status in [
        ("init", "started"),
        ("init", "completed"),
        ("execute", "started"),
        ("implement:T1", "started"),
        ("implement:T1", "completed"),
        ("implement:T2", "started"),
    ]:
        log.record(step, status)  # type: ignore[arg-type]
    entries = list(log.read_all())

    assert phases_completed(entries, ("init", "analyze", "execute")) == ["init"]
    assert tasks_completed(entries) == ["T1"]
    assert active_step(entries) == "implement:T2 (in progress)"
    assert active_step([]) == "unknown"


def test_checkpoints_sequence_and_latest(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path)
    first = store.save(Checkpoint(session_id="s1", current_phase="init", last_action="init"))
    second = store.save(
        Checkpoint(
            session_id="s1",
            current_phase="execute",
            tasks_completed=["T1"],
            tasks_pending=["T2"],
            variables={"tasks": []},
            last_action="implement:T1",
        )
    )

    assert first.checkpoint_id.startswith("chk-000001-")
    assert second.checkpoint_id.startswith("chk-000002-")
    latest = store.load_latest("s1")
    assert latest.checkpoint_id == second.checkpoint_id
    assert latest.tasks_pending == ["T2"]
    assert [item.current_phase for item in store.history("s1")] == ["init", "execute"]
    assert store.load("s1", first.checkpoint_id).last_action == "init"
    assert store.load("s1", "chk-999999-000000") is None
    assert store.load_latest("other") is None


def test_checkpoint_file_uses_camel_case_keys(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path)
    saved = store.save(Checkpoint(session_id="s1", current_phase="plan", tasks_pending=["T1"]))

    payload = json.loads(
        (tmp_path / "s1" / "checkpoints" / f"{saved.checkpoint_id}.json").read_text("utf-8")
    )

    assert payload["currentPhase"] == "plan"
    assert payload["tasksPending"] == ["T1"]
    assert "stepResults" not in payload


def test_unreadable_checkpoint_is_reported(tmp_path: Path) -> None:
    directory = tmp_path / "s1" / "checkpoints"
    directory.mkdir(parents=True)
    (directory / "chk-000001-abcdef.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(SessionStateError):
        CheckpointStore(tmp_path).load_latest("s1")


def test_session_ids_are_prefixed_and_unique() -> None:
    first, second = new_session_id(), new_session_id()

    assert first.startswith("wf-")
    assert len(first.split("-")[1]) == 14
    assert first != second


def test_session_store_create_load_and_status(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    store.create(_record())

    store.set_status("wf-20260101000000-abcdef12", "paused")

    loaded = store.load("wf-20260101000000-abcdef12")
    assert loaded.status == "paused"
    assert store.audit_path(loaded.session_id).exists()
    with pytest.raises(SessionStateError):
        store.create(_record())
    with pytest.raises(SessionNotFound, match="Session not found: wf-missing"):
        store.load("wf-missing")


def test_latest_session_is_most_recently_created(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    older = _record("wf-20260101000000-aaaaaaaa")
    older.created_at = "2026-01-01T00:00:00+00:00"
    newer = _record("wf-20260102000000-bbbbbbbb")
    newer.created_at = "2026-01-02T00:00:00+00:00"
    store.create(newer)
    store.create(older)

    assert store.latest().session_id == newer.session_id
    with pytest.raises(SessionNotFound, match="<latest>"):
        SessionStore(tmp_path / "empty").latest()


def test_blocker_is_archived_when_cleared(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    record = store.create(_record())
    store.write_blocker(record.session_id, Blocker(reason="tests failed", context={"exitCode": 1}))

    assert store.read_blocker(record.session_id).context == {"exitCode": 1}
    cleared = store.clear_blocker(record.session_id)

    assert cleared.reason == "tests failed"
    assert store.read_blocker(record.session_id) is None
    history = (store.session_dir(record.session_id) / "blockers.jsonl").read_text("utf-8")
    assert "tests failed" in history
    assert store.clear_blocker(record.session_id) is None


def test_pause_marker_roundtrip(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    record = store.create(_record())

    store.request_pause(record.session_id)
    assert store.pause_requested(record.session_id)
    store.clear_pause_request(record.session_id)
    assert not store.pause_requested(record.session_id)
    with pytest.raises(SessionNotFound):
        store.request_pause("wf-missing")


def test_lock_rejects_a_live_owner(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    record = store.create(_record())

    with store.lock(record.session_id):
        assert store.is_locked(record.session_id)
        with pytest.raises(SessionLocked):
            with store.lock(record.session_id):
                pass
    assert not store.is_locked(record.session_id)


def test_lock_left_by_a_dead_owner_is_taken_over_once(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    record = store.create(_record())
    lock_file = store.session_dir(record.session_id) / "lock"
    lock_file.write_text("999999", encoding="utf-8")

    assert not store.is_locked(record.session_id)
    with store.lock(record.session_id):
        assert lock_file.read_text(encoding="utf-8") == str(os.getpid())
        # A second contender that also saw the stale file must not steal the lock.
        with pytest.raises(SessionLocked):
            with store.lock(record.session_id):
                pass
        assert lock_file.exists()
        assert store.is_locked(record.session_id)
    assert not store.is_locked(record.session_id)


def test_task_ids_keep_their_colons(tmp_path: Path) -> None:
    log = AuditLog(tmp_path / "audit.jsonl")
    log.record("implement:api:v2", "completed")

    entry = next(iter(log.read_all()))

    assert entry.phase == "implement"
    assert entry.task_id == "api:v2"
    assert tasks_completed([entry]) == ["api:v2"]


def test_checkpoint_without_phase_falls_back_to_init() -> None:
    checkpoint = Checkpoint.from_dict(
        {"checkpointId": "chk-000001-abcdef", "sessionId": "s1", "lastAction": "implement:T1"}
    )

    assert checkpoint.current_phase == "init"
    assert checkpoint.last_action == "implement:T1"
