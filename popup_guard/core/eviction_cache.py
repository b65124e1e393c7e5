"""
Bounded history logs.

Keeps the popup history and the user decision log under their caps
(oldest-first eviction by timestamp), reports stale pending decisions for
forced expiry, and sheds an extra fraction of the oldest entries when the
host reports memory pressure.
"""

import logging
import math
import threading
import time
from typing import Callable, Dict, List, Mapping, Optional

from .errors import InvalidRecordError
from .models import PendingDecision, PopupRecord, UserDecision
from .storage import NS_POPUP_HISTORY, NS_USER_DECISIONS, GuardedStore

logger = logging.getLogger(__name__)


class EvictionCache:
    """
    Capacity- and pressure-bounded record logs.

    Usage:
        cache = EvictionCache(config["cache"], store=guarded_store)
        cache.append(record)          # history + decisions
        stale = cache.stale_pending_ids(pending_table)
        cache.apply_memory_pressure()
    """

    def __init__(
        self,
        config: Optional[Dict] = None,
        store: Optional[GuardedStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the cache.

        Args:
            config: Configuration with:
                - history_cap: Maximum popup history entries (1000)
                - decisions_cap: Maximum decision log entries (500)
                - stale_pending_ms: Age after which a pending decision is force-expired (300000)
                - memory_pressure_fraction: Extra share of oldest entries evicted under pressure (0.3)
            store: Persistence, loaded at construction
            clock: Time source (seconds)
        """
        config = config or {}

        self.history_cap = config.get("history_cap", 1000)
        self.decisions_cap = config.get("decisions_cap", 500)
        self.stale_seconds = config.get("stale_pending_ms", 300000) / 1000.0
        self.pressure_fraction = config.get("memory_pressure_fraction", 0.3)

        self._store = store
        self._clock = clock
        self._history: List[PopupRecord] = []
        self._decisions: List[PopupRecord] = []
        self._lock = threading.Lock()

        self._stats = {"appended": 0, "evicted_capacity": 0, "evicted_pressure": 0}

        self._load()

    # --- appends ---

    def append(self, record: PopupRecord) -> None:
        """Record a resolution in both the history and the decision log."""
        with self._lock:
            self._insert(self._history, record, self.history_cap)
            self._insert(self._decisions, record, self.decisions_cap)
            self._stats["appended"] += 1
            self._save(NS_POPUP_HISTORY)
            self._save(NS_USER_DECISIONS)

    def append_history(self, record: PopupRecord) -> None:
        with self._lock:
            self._insert(self._history, record, self.history_cap)
            self._stats["appended"] += 1
            self._save(NS_POPUP_HISTORY)

    def append_decision(self, record: PopupRecord) -> None:
        with self._lock:
            self._insert(self._decisions, record, self.decisions_cap)
            self._save(NS_USER_DECISIONS)

    def _insert(self, log: List[PopupRecord], record: PopupRecord, cap: int) -> None:
        if not isinstance(record, PopupRecord):
            raise InvalidRecordError(f"expected PopupRecord, got {type(record).__name__}")

        out_of_order = bool(log) and record.timestamp < log[-1].timestamp
        log.append(record)
        if out_of_order:
            # Stable: equal timestamps keep insertion order
            log.sort(key=lambda r: r.timestamp)

        overflow = len(log) - cap
        if overflow > 0:
            del log[:overflow]
            self._stats["evicted_capacity"] += overflow

    # --- sweeps ---

    def stale_pending_ids(
        self, pending: Mapping[str, PendingDecision], now: Optional[float] = None
    ) -> List[str]:
        """Ids of pending decisions older than the staleness window."""
        now = self._clock() if now is None else now
        return [
            popup_id for popup_id, entry in pending.items()
            if now - entry.created_at > self.stale_seconds
        ]

    def apply_memory_pressure(self, fraction: Optional[float] = None) -> Dict[str, int]:
        """
        Evict an extra fraction of the oldest entries of each log.

        Returns:
            Dict of log name → number of evicted entries
        """
        fraction = self.pressure_fraction if fraction is None else fraction
        fraction = max(0.0, min(1.0, fraction))

        with self._lock:
            removed = {
                "history": self._shed(self._history, fraction),
                "decisions": self._shed(self._decisions, fraction),
            }
            self._stats["evicted_pressure"] += sum(removed.values())
            self._save(NS_POPUP_HISTORY)
            self._save(NS_USER_DECISIONS)

        logger.info(f"Memory pressure eviction: {removed}")
        return removed

    @staticmethod
    def _shed(log: List[PopupRecord], fraction: float) -> int:
        # round() first: 10 * 0.3 is 3.0000000000000004 in floating point
        count = int(math.ceil(round(len(log) * fraction, 9)))
        del log[:count]
        return count

    # --- inspection ---

    def history(self, domain: Optional[str] = None, limit: Optional[int] = None) -> List[PopupRecord]:
        """History, oldest first, optionally filtered by domain and limited to the newest entries."""
        with self._lock:
            records = [r for r in self._history if domain is None or r.domain == domain]
        if limit is not None:
            records = records[-limit:] if limit > 0 else []
        return records

    def decisions(
        self,
        domain: Optional[str] = None,
        decision: Optional[UserDecision] = None,
        date_from: Optional[float] = None,
        date_to: Optional[float] = None,
    ) -> List[PopupRecord]:
        """
        Decision log, newest first.

        Args:
            domain: Only this domain
            decision: Only this outcome
            date_from: Earliest timestamp included (seconds)
            date_to: Latest timestamp included (seconds)
        """
        with self._lock:
            records = [
                r for r in self._decisions
                if (domain is None or r.domain == domain)
                and (decision is None or r.user_decision is decision)
                and (date_from is None or r.timestamp >= date_from)
                and (date_to is None or r.timestamp <= date_to)
            ]
        records.reverse()
        return records

    def get_stats(self) -> Dict:
        with self._lock:
            return {
                **self._stats,
                "history_size": len(self._history),
                "history_cap": self.history_cap,
                "decisions_size": len(self._decisions),
                "decisions_cap": self.decisions_cap,
            }

    def clear(self) -> None:
        with self._lock:
            self._history.clear()
            self._decisions.clear()
            if self._store:
                self._store.remove(NS_POPUP_HISTORY, ["records"])
                self._store.remove(NS_USER_DECISIONS, ["records"])
        logger.info("History cleared")

    # --- persistence ---

    def _save(self, namespace: str) -> None:
        if not self._store:
            return
        log = self._history if namespace == NS_POPUP_HISTORY else self._decisions
        self._store.set(namespace, {"records": [r.to_dict() for r in log]})

    def _load(self) -> None:
        if not self._store:
            return
        for namespace, log, cap in (
            (NS_POPUP_HISTORY, self._history, self.history_cap),
            (NS_USER_DECISIONS, self._decisions, self.decisions_cap),
        ):
            raw = self._store.get(namespace, ["records"]).get("records", [])
            if not isinstance(raw, list):
                logger.warning(f"Stored '{namespace}' is not a list; ignoring")
                continue
            for item in raw:
                try:
                    log.append(PopupRecord.from_dict(item))
                except InvalidRecordError as e:
                    logger.warning(f"Skipping stored record in '{namespace}': {e}")
            log.sort(key=lambda r: r.timestamp)
            if len(log) > cap:
                del log[: len(log) - cap]
