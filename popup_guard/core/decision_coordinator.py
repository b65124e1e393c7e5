"""
Per-candidate decision state machine.

    DETECTED → AUTO_SUGGESTED | AWAITING_USER → RESOLVED | EXPIRED

Each detected candidate gets at most one PendingDecision, owning a
cancellable timeout. Whichever comes first (user decision, timeout or stale
sweep) resolves it; the others find nothing to do. Resolutions are written
to the history and forwarded to the pattern store.
"""

import logging
import threading
import time
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from .errors import InvalidRecordError, TimerError
from .eviction_cache import EvictionCache
from .models import (
    USER_SUBMITTABLE_DECISIONS,
    DecisionStatus,
    PatternSuggestion,
    PendingDecision,
    PopupCandidate,
    PopupRecord,
    UserDecision,
)
from .pattern_store import PatternStore
from .scheduler import Scheduler, ThreadingScheduler
from .storage import NS_PENDING_DECISIONS, GuardedStore

if TYPE_CHECKING:
    from ..collaborators.base import UserDecisionChannel

logger = logging.getLogger(__name__)

# Restored timers never fire sooner than this
MIN_RESTORED_TIMEOUT = 1.0


class DecisionCoordinator:
    """
    Owns the pending-decision table.

    Usage:
        coordinator = DecisionCoordinator(patterns, cache, channel, config["decisions"])

        pending = coordinator.on_detected(candidate)
        ...
        record = coordinator.on_decision(candidate.popup_id, UserDecision.CLOSE)

        coordinator.shutdown()
    """

    def __init__(
        self,
        pattern_store: PatternStore,
        cache: EvictionCache,
        channel: Optional["UserDecisionChannel"] = None,
        config: Optional[Dict] = None,
        scheduler: Optional[Scheduler] = None,
        store: Optional[GuardedStore] = None,
        clock: Callable[[], float] = time.time,
        on_resolved: Optional[Callable[[PopupRecord], None]] = None,
    ):
        """
        Initialize the coordinator.

        Args:
            pattern_store: Learning engine consulted for suggestions and fed with outcomes
            cache: History logs
            channel: UI collaborator; None means candidates are never presented
            config: Configuration with:
                - pending_decision_timeout_ms: Time the user has to decide (15000)
                - auto_action_enabled: Resolve with the suggestion instead of asking (False)
            scheduler: Timer factory (daemon threads by default)
            store: Mirror of the pending table ('pendingDecisions')
            clock: Time source (seconds)
            on_resolved: Hook called with every PopupRecord produced
        """
        config = config or {}

        self.timeout_seconds = config.get("pending_decision_timeout_ms", 15000) / 1000.0
        self.auto_action_enabled = config.get("auto_action_enabled", False)

        self.pattern_store = pattern_store
        self.cache = cache
        self.channel = channel
        self.scheduler = scheduler or ThreadingScheduler()
        self._store = store
        self._clock = clock
        self._on_resolved = on_resolved

        self._pending: Dict[str, PendingDecision] = {}
        self._lock = threading.Lock()

    # --- detection ---

    def on_detected(self, candidate: PopupCandidate) -> Optional[PendingDecision]:
        """
        Start the decision workflow for a candidate.

        Returns:
            The PendingDecision (status RESOLVED when auto-resolved), or None
            if a decision for the same popup is already pending.
        """
        with self._lock:
            if candidate.popup_id in self._pending:
                logger.debug(f"Popup {candidate.popup_id} already awaiting a decision; ignoring")
                return None

        suggestion = self.pattern_store.get_pattern_based_suggestion(
            candidate.characteristics, candidate.domain
        )

        if suggestion is not None and self.auto_action_enabled:
            return self._auto_resolve(candidate, suggestion)

        now = self._clock()
        entry = PendingDecision(
            popup_id=candidate.popup_id,
            popup_data=candidate,
            created_at=now,
            suggestion=suggestion,
        )

        with self._lock:
            if candidate.popup_id in self._pending:
                return None
            self._pending[candidate.popup_id] = entry
            self._arm_timeout(entry, self.timeout_seconds)
            self._persist(entry)

        logger.info(
            f"Awaiting decision for {candidate.popup_id} "
            f"(score {candidate.score.value:.2f}, suggestion "
            f"{suggestion.suggestion.value if suggestion else 'none'})"
        )

        self._present(candidate, suggestion)
        return entry

    def _auto_resolve(self, candidate: PopupCandidate, suggestion: PatternSuggestion) -> PendingDecision:
        now = self._clock()
        record = PopupRecord(
            id=candidate.popup_id,
            url=candidate.url,
            domain=candidate.domain,
            timestamp=now,
            characteristics=candidate.characteristics,
            user_decision=suggestion.suggestion,
            confidence=candidate.score.value,
            auto_resolved=True,
        )
        # Not fed back to learning: a pattern must not reinforce itself
        self._record(record, learn=False)

        logger.info(
            f"Auto-resolved {candidate.popup_id} as {suggestion.suggestion.value} "
            f"(pattern {suggestion.pattern_id})"
        )
        self._safe_channel_call("notify_result", candidate.popup_id, suggestion.suggestion)

        return PendingDecision(
            popup_id=candidate.popup_id,
            popup_data=candidate,
            created_at=now,
            status=DecisionStatus.RESOLVED,
            suggestion=suggestion,
        )

    def _arm_timeout(self, entry: PendingDecision, delay: float) -> None:
        try:
            entry.timeout_handle = self.scheduler.call_later(delay, self._on_timeout, entry.popup_id)
        except TimerError as e:
            # The stale sweep still expires the entry
            logger.warning(f"Could not arm timeout for {entry.popup_id}: {e}")

    def _present(self, candidate: PopupCandidate, suggestion: Optional[PatternSuggestion]) -> None:
        self._safe_channel_call("present", candidate, suggestion)

    def _safe_channel_call(self, method: str, *args) -> None:
        if self.channel is None:
            return
        try:
            getattr(self.channel, method)(*args)
        except Exception as e:
            # Unreachable UI (closed tab...): the timeout resolves the candidate
            logger.warning(f"Decision channel {method} failed: {e}")

    # --- resolution ---

    def on_decision(self, popup_id: str, decision) -> Optional[PopupRecord]:
        """
        Resolve a pending decision with the user's answer.

        Args:
            popup_id: Candidate id
            decision: UserDecision or its string value (close/keep/dismiss)

        Returns:
            The PopupRecord, or None if the decision is invalid or nothing is pending
        """
        try:
            decision = self._parse_decision(decision)
        except InvalidRecordError as e:
            logger.warning(f"Rejected decision for {popup_id}: {e}")
            return None

        with self._lock:
            entry = self._pending.pop(popup_id, None)
            if entry is None:
                logger.warning(f"No pending decision for {popup_id}")
                return None

            self._cancel_timeout(entry)
            entry.status = DecisionStatus.RESOLVED
            record = self._build_record(entry, decision)
            self._record(record, learn=True)
            self._unpersist(popup_id)

        logger.info(f"Decision for {popup_id}: {decision.value} after {record.response_time:.1f}s")
        self._safe_channel_call("notify_result", popup_id, decision)
        return record

    def _on_timeout(self, popup_id: str) -> None:
        record = self._expire(popup_id)
        if record is not None:
            logger.info(f"Decision timed out for {popup_id}")

    def _expire(self, popup_id: str) -> Optional[PopupRecord]:
        with self._lock:
            entry = self._pending.pop(popup_id, None)
            if entry is None:
                return None

            self._cancel_timeout(entry)
            entry.status = DecisionStatus.EXPIRED
            record = self._build_record(entry, UserDecision.TIMEOUT)
            self._record(record, learn=False)
            self._unpersist(popup_id)

        self._safe_channel_call("notify_timeout", popup_id)
        return record

    def sweep_stale(self, now: Optional[float] = None) -> List[str]:
        """
        Force-expire pending decisions older than the staleness window.

        Covers timers that never fired (missed callbacks, clock drift).

        Returns:
            Ids of the expired candidates
        """
        with self._lock:
            stale = self.cache.stale_pending_ids(self._pending, now)

        expired = [popup_id for popup_id in stale if self._expire(popup_id) is not None]
        if expired:
            logger.warning(f"Force-expired {len(expired)} stale pending decisions")
        return expired

    @staticmethod
    def _parse_decision(decision) -> UserDecision:
        if not isinstance(decision, UserDecision):
            try:
                decision = UserDecision(str(decision).lower())
            except ValueError:
                raise InvalidRecordError(f"unknown decision {decision!r}")
        if decision not in USER_SUBMITTABLE_DECISIONS:
            raise InvalidRecordError(f"decision '{decision.value}' cannot be submitted")
        return decision

    @staticmethod
    def _cancel_timeout(entry: PendingDecision) -> None:
        if entry.timeout_handle is not None:
            entry.timeout_handle.cancel()
            entry.timeout_handle = None

    def _build_record(self, entry: PendingDecision, decision: UserDecision) -> PopupRecord:
        now = self._clock()
        candidate = entry.popup_data
        return PopupRecord(
            id=entry.popup_id,
            url=candidate.url,
            domain=candidate.domain,
            timestamp=now,
            characteristics=candidate.characteristics,
            user_decision=decision,
            confidence=candidate.score.value,
            response_time=max(0.0, now - entry.created_at),
        )

    def _record(self, record: PopupRecord, learn: bool) -> None:
        self.cache.append(record)
        if learn:
            self.pattern_store.update_learning_data(record)
        if self._on_resolved:
            try:
                self._on_resolved(record)
            except Exception as e:
                logger.warning(f"Resolution hook failed: {e}")

    # --- inspection / lifecycle ---

    def is_pending(self, popup_id: str) -> bool:
        with self._lock:
            return popup_id in self._pending

    def pending_decisions(self, domain: Optional[str] = None) -> List[Dict]:
        """Summaries of pending decisions, optionally for one domain."""
        with self._lock:
            entries = list(self._pending.values())
        return [
            e.to_dict() for e in entries
            if domain is None or e.popup_data.domain == domain
        ]

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def restore_pending(self) -> int:
        """
        Re-arm pending decisions mirrored in the store.

        Entries past the staleness window are dropped; the others get the
        remainder of their timeout (at least MIN_RESTORED_TIMEOUT).

        Returns:
            Number of restored entries
        """
        if not self._store:
            return 0

        stored = self._store.get(NS_PENDING_DECISIONS)
        now = self._clock()
        restored, dropped = 0, []

        for popup_id, data in stored.items():
            try:
                candidate = PendingDecision.candidate_from_dict(data)
            except InvalidRecordError as e:
                logger.warning(f"Dropping stored pending decision {popup_id}: {e}")
                dropped.append(popup_id)
                continue

            age = now - candidate.detected_at
            if age > self.cache.stale_seconds:
                dropped.append(popup_id)
                continue

            entry = PendingDecision(
                popup_id=candidate.popup_id,
                popup_data=candidate,
                created_at=candidate.detected_at,
            )
            with self._lock:
                if entry.popup_id in self._pending:
                    continue
                self._pending[entry.popup_id] = entry
                self._arm_timeout(entry, max(MIN_RESTORED_TIMEOUT, self.timeout_seconds - age))
            restored += 1

        if dropped:
            self._store.remove(NS_PENDING_DECISIONS, dropped)
        if restored:
            logger.info(f"Restored {restored} pending decisions")
        return restored

    def shutdown(self) -> None:
        """Cancel every outstanding timer and drop the pending table."""
        with self._lock:
            for entry in self._pending.values():
                self._cancel_timeout(entry)
            count = len(self._pending)
            self._pending.clear()
        if count:
            logger.info(f"Shutdown cancelled {count} pending decisions")

    def _persist(self, entry: PendingDecision) -> None:
        if self._store:
            self._store.set(NS_PENDING_DECISIONS, {entry.popup_id: entry.to_dict()})

    def _unpersist(self, popup_id: str) -> None:
        if self._store:
            self._store.remove(NS_PENDING_DECISIONS, [popup_id])
