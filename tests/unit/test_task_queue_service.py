from __future__ import annotations

from pathlib import Path

from vectorsync.application.services.task_queue_service import TaskQueueService
from vectorsync.core.errors import ConfigurationError
from vectorsync.infrastructure.db.sqlite import initialize_schema


def _queue(tmp_path: Path, *, max_attempts: int = 3) -> TaskQueueService:
    db_path = tmp_path / "vectorsync.db"
    initialize_schema(db_path)
    return TaskQueueService(db_path=db_path, max_attempts=max_attempts)


def test_tasks_run_in_enqueue_order(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    seen: list[int] = []
    queue.register("record", lambda payload: seen.append(payload["n"]) or {"n": payload["n"]})
    for n in range(3):
        queue.enqueue("record", {"n": n})

    assert queue.run_pending() == 3
    assert seen == [0, 1, 2]
    assert queue.counts() == {"done": 3}
    assert queue.run_next() is None


def test_delayed_task_is_not_due_yet(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    queue.register("later", lambda payload: None)
    task_id = queue.enqueue("later", {}, delay_seconds=3600)

    assert queue.run_pending() == 0
    assert queue.get_task(task_id).status == "queued"


def test_failing_task_is_retried_until_max_attempts(tmp_path: Path) -> None:
    queue = _queue(tmp_path, max_attempts=2)
    calls: list[dict] = []

    def _flaky(payload):
        calls.append(payload)
        raise RuntimeError("provider timeout")

    queue.register("flaky", _flaky)
    task_id = queue.enqueue("flaky", {"run_id": "r1"})

    first = queue.run_next()
    assert first.status == "queued"
    assert first.attempts == 1
    second = queue.run_next()
    assert second.status == "failed"
    assert second.attempts == 2
    assert second.error_message == "provider timeout"
    assert len(calls) == 2
    assert queue.get_task(task_id).finished_at is not None


def test_task_that_recovers_on_retry_is_done(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    attempts = {"count": 0}

    def _once(payload):
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise RuntimeError("transient")
        return {"ok": True}

    queue.register("once", _once)
    queue.enqueue("once", {})

    assert queue.run_pending() == 2
    (task,) = queue.list_tasks()
    assert task.status == "done"
    assert task.attempts == 2
    assert task.error_message is None


def test_configuration_errors_are_not_retried(tmp_path: Path) -> None:
    queue = _queue(tmp_path)

    def _misconfigured(payload):
        raise ConfigurationError("Unknown knowledge pool 'x'")

    queue.register("prepare", _misconfigured)
    queue.enqueue("prepare", {})

    task = queue.run_next()
    assert task.status == "failed"
    assert task.attempts == 1


def test_unknown_task_fails_without_retry(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    queue.enqueue("nobody-handles-this", {})

    task = queue.run_next()
    assert task.status == "failed"
    assert "No handler registered" in (task.error_message or "")


def test_queue_filter_and_inflight_recovery(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    queue.register("noop", lambda payload: None)
    queue.enqueue("noop", {}, queue_name="poll")
    prepare_id = queue.enqueue("noop", {}, queue_name="prepare")

    assert queue.run_pending(queue_name="poll") == 1
    assert queue.get_task(prepare_id).status == "queued"

    claimed = queue._claim_next_task("prepare")
    assert claimed is not None
    assert queue.get_task(prepare_id).status == "processing"
    assert queue.recover_inflight_tasks() == 1
    assert queue.run_pending() == 1
    assert queue.get_task(prepare_id).status == "done"
