"""
Audit sink for discount decisions and escalation resolutions.

WHY: Every decision and every approval/denial must leave an immutable
trail, but an audit store hiccup must never hold up a register or undo a
budget change that already committed.

DESIGN PRINCIPLES:
- Services call record() AFTER their ledger transaction commits
- Each write waits at most AUDIT_WRITE_TIMEOUT_SECONDS on a worker thread
- Failed/slow writes are logged and retried by a background thread with
  bounded attempts and exponential backoff
- Entries carry a producer-assigned entry_id; sinks ignore redeliveries
"""

from __future__ import annotations

import json
import threading
import time
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DiscountAuditEvent
from ..time_utils import to_utc_z, utcnow


AUDIT_EXTENSION_KEY = "discount_audit"


@dataclass(frozen=True)
class AuditEntry:
    entry_id: str
    event_type: str
    entity_type: str
    entity_id: str
    actor_employee_id: int | None
    occurred_at: datetime
    payload: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["occurred_at"] = to_utc_z(self.occurred_at)
        return data


class AuditSink:
    """Append-only destination for audit entries."""

    def write(self, entry: AuditEntry) -> None:
        raise NotImplementedError


class DatabaseAuditSink(AuditSink):
    """Appends entries to discount_audit_events in a fresh app context."""

    def __init__(self, app):
        self.app = app

    def write(self, entry: AuditEntry) -> None:
        with self.app.app_context():
            db.session.add(DiscountAuditEvent(
                entry_id=entry.entry_id,
                event_type=entry.event_type,
                entity_type=entry.entity_type,
                entity_id=str(entry.entity_id),
                actor_employee_id=entry.actor_employee_id,
                occurred_at=entry.occurred_at,
                payload=json.dumps(entry.payload, sort_keys=True, default=str),
            ))
            try:
                db.session.commit()
            except IntegrityError:
                # Redelivery of an entry that already landed
                db.session.rollback()


class AuditDispatcher:
    """
    Bounded-latency delivery in front of an AuditSink.

    submit() returns True when the sink accepted the entry within the
    timeout, False when the entry was handed to the retry queue.
    """

    def __init__(self, sink: AuditSink, *, logger, timeout: float = 2.0,
                 retry_attempts: int = 5, retry_backoff: float = 0.5):
        self.sink = sink
        self.logger = logger
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff

        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="audit-write")
        self._queue: deque[tuple[AuditEntry, int]] = deque()
        self._cond = threading.Condition()
        self._in_flight = 0
        self._retry_thread: threading.Thread | None = None

    def submit(self, entry: AuditEntry) -> bool:
        future = self._executor.submit(self.sink.write, entry)
        try:
            future.result(timeout=self.timeout)
            return True
        except Exception as exc:
            self.logger.warning(
                "Audit write for %s (%s) failed or timed out, queued for retry: %r",
                entry.event_type, entry.entry_id, exc,
            )
            self._enqueue(entry, attempt=1)
            return False

    @property
    def pending(self) -> int:
        with self._cond:
            return len(self._queue) + self._in_flight

    def flush(self, timeout: float = 10.0) -> bool:
        """Block until the retry queue drains. Returns False on timeout."""
        deadline = time.monotonic() + timeout
        with self._cond:
            while self._queue or self._in_flight:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
        return True

    def _enqueue(self, entry: AuditEntry, attempt: int) -> None:
        with self._cond:
            self._queue.append((entry, attempt))
            if self._retry_thread is None or not self._retry_thread.is_alive():
                self._retry_thread = threading.Thread(
                    target=self._retry_loop, name="audit-retry", daemon=True
                )
                self._retry_thread.start()
            self._cond.notify_all()

    def _retry_loop(self) -> None:
        while True:
            with self._cond:
                while not self._queue:
                    self._cond.wait()
                entry, attempt = self._queue.popleft()
                self._in_flight += 1

            time.sleep(self.retry_backoff * (2 ** (attempt - 1)))
            try:
                self.sink.write(entry)
            except Exception as exc:
                if attempt >= self.retry_attempts:
                    self.logger.error(
                        "Dropping audit entry after %s attempts: %s payload=%s error=%r",
                        attempt, entry.event_type, json.dumps(entry.to_dict(), default=str), exc,
                    )
                else:
                    with self._cond:
                        self._queue.append((entry, attempt + 1))
            finally:
                with self._cond:
                    self._in_flight -= 1
                    self._cond.notify_all()


def get_dispatcher() -> AuditDispatcher:
    return current_app.extensions[AUDIT_EXTENSION_KEY]


def record(
    event_type: str,
    entity_type: str,
    entity_id,
    *,
    actor_employee_id: int | None = None,
    payload: dict | None = None,
) -> AuditEntry:
    """Build an entry and hand it to the app's dispatcher."""
    entry = AuditEntry(
        entry_id=uuid.uuid4().hex,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=str(entity_id),
        actor_employee_id=actor_employee_id,
        occurred_at=utcnow(),
        payload=payload or {},
    )
    get_dispatcher().submit(entry)
    return entry
