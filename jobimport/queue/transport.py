from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from jobimport.core.errors import InfrastructureError
from jobimport.core.models import BatchWorkItem

logger = logging.getLogger(__name__)

QUEUED = "queued"
ACTIVE = "active"
DONE = "done"
FAILED = "failed"


@dataclass(slots=True)
class ClaimedItem:
    handle: int
    attempts: int
    item: BatchWorkItem


class SqliteWorkQueue:
    """Durable at-least-once queue of batch work items.

    An item is claimed by one worker at a time. Items whose handler fails are
    requeued with exponential backoff until ``max_attempts`` is reached; items
    left claimed by a dead process are put back by ``recover_stale``.
    """

    def __init__(self, path: str = "data/queue.db", max_attempts: int = 3, backoff_seconds: float = 2.0) -> None:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.conn = sqlite3.connect(path, check_same_thread=False, timeout=30)
        self.conn.row_factory = sqlite3.Row
        self.lock = threading.Lock()
        with self.lock:
            self.conn.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS work_items (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id INTEGER,
                    payload TEXT NOT NULL,
                    status TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    available_at REAL NOT NULL,
                    claimed_at REAL,
                    last_error TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_work_items_status ON work_items(status, available_at);
                """
            )
            self.conn.commit()

    def enqueue(self, item: BatchWorkItem) -> int:
        try:
            with self.lock, self.conn:
                cur = self.conn.execute(
                    "INSERT INTO work_items(run_id, payload, status, available_at) VALUES (?,?,?,?)",
                    (item.run_id, json.dumps(item.to_dict(), default=str), QUEUED, time.time()),
                )
        except sqlite3.Error as exc:
            raise InfrastructureError(f"enqueue failed: {exc}") from exc
        return int(cur.lastrowid)

    def claim(self) -> ClaimedItem | None:
        now = time.time()
        with self.lock, self.conn:
            row = self.conn.execute(
                "SELECT id FROM work_items WHERE status=? AND available_at<=? ORDER BY id LIMIT 1",
                (QUEUED, now),
            ).fetchone()
            if row is None:
                return None
            self.conn.execute(
                "UPDATE work_items SET status=?, attempts=attempts+1, claimed_at=? WHERE id=?",
                (ACTIVE, now, row["id"]),
            )
            claimed = self.conn.execute("SELECT id, attempts, payload FROM work_items WHERE id=?", (row["id"],)).fetchone()
        return ClaimedItem(
            handle=claimed["id"],
            attempts=claimed["attempts"],
            item=BatchWorkItem.from_dict(json.loads(claimed["payload"])),
        )

    def ack(self, handle: int) -> None:
        with self.lock, self.conn:
            self.conn.execute("UPDATE work_items SET status=?, last_error=NULL WHERE id=?", (DONE, handle))

    def fail(self, handle: int, error: str) -> bool:
        """Record a failed attempt; True when the item will be retried."""
        with self.lock, self.conn:
            row = self.conn.execute("SELECT attempts FROM work_items WHERE id=?", (handle,)).fetchone()
            attempts = row["attempts"] if row else self.max_attempts
            if attempts >= self.max_attempts:
                self.conn.execute("UPDATE work_items SET status=?, last_error=? WHERE id=?", (FAILED, error, handle))
                return False
            delay = self.backoff_seconds * 2 ** (attempts - 1)
            self.conn.execute(
                "UPDATE work_items SET status=?, last_error=?, available_at=? WHERE id=?",
                (QUEUED, error, time.time() + delay, handle),
            )
            return True

    def recover_stale(self, older_than_seconds: float) -> int:
        cutoff = time.time() - older_than_seconds
        with self.lock, self.conn:
            cur = self.conn.execute(
                "UPDATE work_items SET status=?, available_at=? WHERE status=? AND claimed_at<=?",
                (QUEUED, time.time(), ACTIVE, cutoff),
            )
        if cur.rowcount:
            logger.warning("stale_items_requeued", extra={"extra_fields": {"count": cur.rowcount}})
        return cur.rowcount

    def counts(self) -> dict[str, int]:
        with self.lock:
            rows = self.conn.execute("SELECT status, COUNT(*) AS n FROM work_items GROUP BY status").fetchall()
        return {row["status"]: row["n"] for row in rows}

    def has_pending(self) -> bool:
        counts = self.counts()
        return bool(counts.get(QUEUED) or counts.get(ACTIVE))

    def close(self) -> None:
        with self.lock:
            self.conn.close()


class WorkerPool:
    def __init__(
        self,
        queue: SqliteWorkQueue,
        handler: Callable[[BatchWorkItem], object],
        concurrency: int = 5,
        on_exhausted: Callable[[BatchWorkItem, str], None] | None = None,
        poll_interval: float = 1.0,
    ) -> None:
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.on_exhausted = on_exhausted
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        self._stop.clear()
        for idx in range(self.concurrency):
            thread = threading.Thread(target=self._loop, name=f"batch-worker-{idx}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info("worker_pool_started", extra={"extra_fields": {"concurrency": self.concurrency}})

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []

    def _loop(self) -> None:
        while not self._stop.is_set():
            if not self.work_once():
                self._stop.wait(self.poll_interval)

    def work_once(self) -> bool:
        claimed = self.queue.claim()
        if claimed is None:
            return False
        try:
            self.handler(claimed.item)
        except Exception as exc:  # noqa: BLE001
            error = f"{type(exc).__name__}: {exc}"
            retry = self.queue.fail(claimed.handle, error)
            logger.warning(
                "batch_failed",
                exc_info=True,
                extra={
                    "extra_fields": {
                        "handle": claimed.handle,
                        "run_id": claimed.item.run_id,
                        "attempt": claimed.attempts,
                        "retry": retry,
                    }
                },
            )
            if not retry and self.on_exhausted is not None:
                self.on_exhausted(claimed.item, error)
            return True
        self.queue.ack(claimed.handle)
        return True

    def drain(self, max_wait_seconds: float = 60.0) -> None:
        """Process items in the calling thread until nothing is queued or backing off."""
        deadline = time.monotonic() + max_wait_seconds
        while time.monotonic() < deadline:
            if self.work_once():
                continue
            if not self.queue.has_pending():
                return
            time.sleep(min(self.poll_interval, 0.05))
