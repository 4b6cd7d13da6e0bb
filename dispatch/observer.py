"""
Purpose: Requester-side view of one broadcast.
What it does:
- apply_broadcast_update: pure reducer merging an incoming snapshot into the current one
- CompletionToken: makes terminal handling run exactly once
- BroadcastWatcher: change subscription + polling fallback + local countdown

Change notification and polling may deliver the same snapshot twice or out of
order; the reducer and the token make that harmless.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from broadcasts.models import BroadcastRecord, BroadcastStatus, utcnow
from broadcasts.policy import BroadcastPolicy, policy_for_kind, policy_from_env
from broadcasts.store import BroadcastStore

logger = logging.getLogger(__name__)


def apply_broadcast_update(
    current: Optional[BroadcastRecord],
    incoming: Optional[BroadcastRecord],
) -> Optional[BroadcastRecord]:
    """
    Terminal state is sticky; otherwise the higher version wins.
    """
    if incoming is None:
        return current
    if current is None:
        return incoming
    if current.is_terminal:
        return current
    if incoming.is_terminal or incoming.version > current.version:
        return incoming
    return current


class CompletionToken:
    """One-shot flag. The first claim() returns True, every later one False."""
    def __init__(self):
        self._lock = threading.Lock()
        self._claimed = False

    def claim(self) -> bool:
        with self._lock:
            if self._claimed:
                return False
            self._claimed = True
            return True

    @property
    def claimed(self) -> bool:
        return self._claimed


@dataclass(frozen=True)
class BroadcastOutcome:
    broadcast_id: str
    status: BroadcastStatus
    result_resource_id: Optional[str] = None
    accepted_by: Optional[str] = None
    reason: str = ""

    @staticmethod
    def from_record(record: BroadcastRecord) -> "BroadcastOutcome":
        return BroadcastOutcome(
            broadcast_id=record.id,
            status=record.status,
            result_resource_id=record.result_resource_id,
            accepted_by=record.accepted_by,
            reason=record.failure_reason or "",
        )


class BroadcastWatcher:
    """
    Watches one broadcast until it turns terminal.

    on_change(record) runs for every snapshot that moved local state forward.
    on_terminal(outcome) runs once. When the local countdown reaches zero before
    the server reports anything terminal, the watcher reports FAILED("timeout")
    on its own; the server-side sweep eventually agrees.
    `poll_interval` defaults to the poll interval of the broadcast's policy.
    """
    def __init__(
        self,
        store: BroadcastStore,
        broadcast_id: str,
        on_change: Optional[Callable[[BroadcastRecord], None]] = None,
        on_terminal: Optional[Callable[[BroadcastOutcome], None]] = None,
        poll_interval: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.broadcast_id = broadcast_id
        self.on_change = on_change
        self.on_terminal = on_terminal
        self.poll_interval = poll_interval if poll_interval is not None else self._policy_poll_interval()
        self.clock = clock

        self.record: Optional[BroadcastRecord] = None
        self.outcome: Optional[BroadcastOutcome] = None

        self._lock = threading.RLock()
        self._token = CompletionToken()
        self._done = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    def start(self) -> "BroadcastWatcher":
        self._unsubscribe = self.store.subscribe(self.broadcast_id, self._on_snapshot)
        self.poll_once()

        if not self._done.is_set():
            self._thread = threading.Thread(
                target=self._poll_loop,
                name=f"broadcast-watcher-{self.broadcast_id}",
                daemon=True,
            )
            self._thread.start()
        return self

    def poll_once(self, now: Optional[datetime] = None) -> Optional[BroadcastRecord]:
        """
        One polling tick: fetch the record, merge it, then check the countdown.
        """
        self._on_snapshot(self.store.get_broadcast(self.broadcast_id))
        self._check_countdown(now or self.clock())
        return self.record

    def remaining_seconds(self, now: Optional[datetime] = None) -> float:
        with self._lock:
            if self.record is None:
                return 0.0
            return self.record.remaining_seconds(now or self.clock())

    def wait(self, timeout: Optional[float] = None) -> Optional[BroadcastOutcome]:
        self._done.wait(timeout)
        return self.outcome

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def close(self) -> None:
        self._stop.set()
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe:
            unsubscribe()
        thread = self._thread
        if thread and thread is not threading.current_thread():
            thread.join(timeout=self.poll_interval + 1)

    def __enter__(self) -> "BroadcastWatcher":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --- internals ---

    def _policy_poll_interval(self) -> float:
        record = self.store.get_broadcast(self.broadcast_id)
        if record is None:
            return BroadcastPolicy().poll_interval_seconds
        return policy_from_env(policy_for_kind(record.kind)).poll_interval_seconds

    def _poll_loop(self) -> None:
        while not self._stop.wait(self.poll_interval):
            try:
                self.poll_once()
            except Exception:
                logger.exception(f"[Observer] Poll failed for broadcast {self.broadcast_id}")
            if self._done.is_set():
                return

    def _on_snapshot(self, incoming: Optional[BroadcastRecord]) -> None:
        with self._lock:
            merged = apply_broadcast_update(self.record, incoming)
            changed = merged is not self.record
            self.record = merged

        if not changed or merged is None:
            return

        if self.on_change:
            try:
                self.on_change(merged)
            except Exception:
                logger.exception(f"[Observer] on_change failed for broadcast {self.broadcast_id}")

        if merged.is_terminal:
            self._finish(BroadcastOutcome.from_record(merged))

    def _check_countdown(self, now: datetime) -> None:
        with self._lock:
            record = self.record
        if record is None or record.is_terminal or self._done.is_set():
            return
        if record.remaining_seconds(now) <= 0:
            logger.info(f"[Observer] Broadcast {self.broadcast_id} countdown reached zero")
            self._finish(BroadcastOutcome(
                broadcast_id=record.id,
                status=BroadcastStatus.FAILED,
                reason="timeout",
            ))

    def _finish(self, outcome: BroadcastOutcome) -> None:
        if not self._token.claim():
            return

        self.outcome = outcome
        self._done.set()
        self._stop.set()
        logger.info(f"[Observer] Broadcast {self.broadcast_id} finished: {outcome.status.value}")

        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe:
            unsubscribe()

        if self.on_terminal:
            try:
                self.on_terminal(outcome)
            except Exception:
                logger.exception(f"[Observer] on_terminal failed for broadcast {self.broadcast_id}")
