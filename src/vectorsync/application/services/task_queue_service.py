from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from vectorsync.core.config import DEFAULT_QUEUE_NAME
from vectorsync.core.errors import ConfigurationError
from vectorsync.core.ids import new_uuid
from vectorsync.core.time import now_utc_iso, utc_iso_after
from vectorsync.infrastructure.db.sqlite import get_connection

logger = logging.getLogger(__name__)

TaskHandler = Callable[[dict[str, Any]], Any]


@dataclass(slots=True)
class QueuedTask:
    id: str
    queue_name: str
    task_name: str
    input: dict[str, Any]
    status: str
    attempts: int
    max_attempts: int
    error_message: str | None
    available_at: str
    created_at: str
    finished_at: str | None


class TaskQueueService:
    """At-least-once work queue persisted in the ``task_queue`` table.

    Handlers must be idempotent: a task whose worker died mid-run is handed out
    again after ``recover_inflight_tasks``, and failing tasks are retried until
    ``max_attempts``.
    """

    _TERMINAL_STATUSES = {"done", "failed"}

    def __init__(self, *, db_path: Path, max_attempts: int = 3) -> None:
        self.db_path = db_path
        self.max_attempts = max(1, max_attempts)
        self._handlers: dict[str, TaskHandler] = {}
        self._wakeup = threading.Event()
        self._stop = threading.Event()
        self._worker: threading.Thread | None = None

    def register(self, task_name: str, handler: TaskHandler) -> None:
        self._handlers[task_name] = handler

    def enqueue(
        self,
        task_name: str,
        input: dict[str, Any],
        *,
        queue_name: str | None = None,
        delay_seconds: float = 0,
    ) -> str:
        task_id = new_uuid()
        now = now_utc_iso()
        available_at = utc_iso_after(delay_seconds) if delay_seconds > 0 else now
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO task_queue (
                    id,
                    queue_name,
                    task_name,
                    input_json,
                    status,
                    attempts,
                    max_attempts,
                    output_json,
                    error_message,
                    available_at,
                    created_at,
                    updated_at,
                    started_at,
                    finished_at
                ) VALUES (?, ?, ?, ?, 'queued', 0, ?, NULL, NULL, ?, ?, ?, NULL, NULL)
                """,
                (
                    task_id,
                    queue_name or DEFAULT_QUEUE_NAME,
                    task_name,
                    json.dumps(input, ensure_ascii=True, sort_keys=True),
                    self.max_attempts,
                    available_at,
                    now,
                    now,
                ),
            )
            conn.commit()
        logger.debug("Enqueued %s (%s) on %s", task_name, task_id, queue_name or DEFAULT_QUEUE_NAME)
        self._wakeup.set()
        return task_id

    def run_next(self, *, queue_name: str | None = None) -> QueuedTask | None:
        """Claim and execute one due task; returns it in its final state, or None when idle."""
        row = self._claim_next_task(queue_name)
        if row is None:
            return None
        self._process_task(row)
        return self.get_task(str(row["id"]))

    def run_pending(self, *, max_tasks: int = 100, queue_name: str | None = None) -> int:
        processed = 0
        while processed < max_tasks:
            if self.run_next(queue_name=queue_name) is None:
                break
            processed += 1
        return processed

    def get_task(self, task_id: str) -> QueuedTask | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT * FROM task_queue WHERE id = ?", (task_id,)).fetchone()
        return self._to_task(row) if row else None

    def list_tasks(self, *, status: str | None = None, limit: int = 200) -> list[QueuedTask]:
        safe_limit = max(1, min(int(limit), 50000))
        with get_connection(self.db_path) as conn:
            if status:
                rows = conn.execute(
                    """
                    SELECT *
                    FROM task_queue
                    WHERE status = ?
                    ORDER BY created_at ASC, id ASC
                    LIMIT ?
                    """,
                    (status, safe_limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM task_queue ORDER BY created_at ASC, id ASC LIMIT ?",
                    (safe_limit,),
                ).fetchall()
        return [self._to_task(row) for row in rows]

    def counts(self) -> dict[str, int]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute("SELECT status, COUNT(*) AS c FROM task_queue GROUP BY status").fetchall()
        return {str(row["status"]): int(row["c"]) for row in rows}

    def start(self, *, queue_name: str | None = None) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self.recover_inflight_tasks()
        self._stop.clear()
        self._worker = threading.Thread(
            target=self._worker_loop,
            kwargs={"queue_name": queue_name},
            daemon=True,
            name="vectorsync-task-queue",
        )
        self._worker.start()

    def shutdown(self) -> None:
        self._stop.set()
        self._wakeup.set()
        if self._worker is not None and self._worker.is_alive():
            self._worker.join(timeout=2.0)

    def recover_inflight_tasks(self) -> int:
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE task_queue
                SET status = 'queued',
                    error_message = 'Recovered after worker restart.',
                    updated_at = ?
                WHERE status = 'processing'
                """,
                (now_utc_iso(),),
            )
            conn.commit()
        return int(cursor.rowcount or 0)

    def _worker_loop(self, queue_name: str | None) -> None:
        while not self._stop.is_set():
            row = self._claim_next_task(queue_name)
            if row is None:
                self._wakeup.wait(timeout=1.0)
                self._wakeup.clear()
                continue
            self._process_task(row)

    def _claim_next_task(self, queue_name: str | None):
        now = now_utc_iso()
        with get_connection(self.db_path) as conn:
            if queue_name:
                row = conn.execute(
                    """
                    SELECT *
                    FROM task_queue
                    WHERE queue_name = ?
                      AND status = 'queued'
                      AND available_at <= ?
                    ORDER BY available_at ASC, created_at ASC, id ASC
                    LIMIT 1
                    """,
                    (queue_name, now),
                ).fetchone()
            else:
                row = conn.execute(
                    """
                    SELECT *
                    FROM task_queue
                    WHERE status = 'queued'
                      AND available_at <= ?
                    ORDER BY available_at ASC, created_at ASC, id ASC
                    LIMIT 1
                    """,
                    (now,),
                ).fetchone()
            if row is None:
                return None
            cursor = conn.execute(
                """
                UPDATE task_queue
                SET status = 'processing',
                    attempts = attempts + 1,
                    updated_at = ?,
                    started_at = COALESCE(started_at, ?)
                WHERE id = ?
                  AND status = 'queued'
                """,
                (now, now, row["id"]),
            )
            conn.commit()
            if not cursor.rowcount:
                return None
            claimed = conn.execute("SELECT * FROM task_queue WHERE id = ?", (row["id"],)).fetchone()
        return claimed

    def _process_task(self, row) -> None:
        task_id = str(row["id"])
        task_name = str(row["task_name"])
        handler = self._handlers.get(task_name)
        if handler is None:
            self._mark_task_failed(task_id, f"No handler registered for task {task_name!r}", retry=False)
            logger.error("No handler registered for task %s (%s)", task_name, task_id)
            return
        try:
            payload = handler(json.loads(row["input_json"] or "{}"))
        except Exception as exc:
            logger.exception("Task %s failed: %s", task_name, task_id)
            retry = int(row["attempts"]) < int(row["max_attempts"]) and not isinstance(exc, ConfigurationError)
            self._mark_task_failed(task_id, str(exc), retry=retry)
            return
        self._mark_task_done(task_id, payload)

    def _mark_task_done(self, task_id: str, payload: Any) -> None:
        now = now_utc_iso()
        output = json.dumps(payload, ensure_ascii=True, default=str) if payload is not None else None
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                UPDATE task_queue
                SET status = 'done',
                    output_json = ?,
                    error_message = NULL,
                    updated_at = ?,
                    finished_at = ?
                WHERE id = ?
                """,
                (output, now, now, task_id),
            )
            conn.commit()

    def _mark_task_failed(self, task_id: str, message: str, *, retry: bool) -> None:
        now = now_utc_iso()
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                UPDATE task_queue
                SET status = ?,
                    error_message = ?,
                    updated_at = ?,
                    finished_at = ?
                WHERE id = ?
                """,
                ("queued" if retry else "failed", message, now, None if retry else now, task_id),
            )
            conn.commit()

    @staticmethod
    def _to_task(row) -> QueuedTask:
        return QueuedTask(
            id=row["id"],
            queue_name=row["queue_name"],
            task_name=row["task_name"],
            input=json.loads(row["input_json"] or "{}"),
            status=row["status"],
            attempts=int(row["attempts"] or 0),
            max_attempts=int(row["max_attempts"] or 0),
            error_message=row["error_message"],
            available_at=row["available_at"],
            created_at=row["created_at"],
            finished_at=row["finished_at"],
        )
