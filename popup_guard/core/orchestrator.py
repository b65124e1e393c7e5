"""
Orchestrator module - popup detection pipeline.

This module coordinates the flow:
Whitelist -> Throttle -> Feature extraction -> Scoring -> Decision -> Learning.
It is also the single entry point for JSON messages from the extension.
"""

import threading
import time
import uuid
from typing import Any, Callable, Dict, Optional

from ..__version__ import __version__
from ..collaborators.base import ElementAccessor, NotificationChannel, UserDecisionChannel
from ..collaborators.channels import LoggingNotificationChannel, NullDecisionChannel
from ..collaborators.snapshot import SnapshotElement
from ..utils.config import DEFAULT_CONFIG, get_section, load_config, merge_config, validate_config
from ..utils.logger import logger, set_log_level
from ..utils.sanitize import (
    extract_domain,
    sanitize_decision,
    sanitize_popup_id,
    sanitize_snapshot,
    sanitize_url,
)
from .confidence import ConfidenceScorer
from .decision_coordinator import DecisionCoordinator
from .errors import InvalidRecordError, TimerError
from .eviction_cache import EvictionCache
from .feature_extractor import FeatureExtractor
from .models import DecisionStatus, PopupCandidate, PopupRecord, Tier, UserDecision
from .pattern_store import PatternStore
from .scheduler import Scheduler, ThreadingScheduler
from .storage import NS_USER_PREFERENCES, GuardedStore, PersistentStore, create_store
from .throttle import ThrottleGovernor


class PopupGuardEngine:
    """
    Coordonne le flux : Détection -> Analyse -> Décision -> Apprentissage.

    Usage:
        engine = PopupGuardEngine(decision_channel=ui)
        result = engine.process_candidate(element, "https://example.com/page")
        ...
        engine.on_decision(result["popupId"], "close")

        engine.handle_message({"type": "ping"})
        engine.shutdown()
    """

    def __init__(
        self,
        config: Optional[Dict] = None,
        store: Optional[PersistentStore] = None,
        decision_channel: Optional[UserDecisionChannel] = None,
        notification_channel: Optional[NotificationChannel] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Wire the pipeline.

        Args:
            config: Configuration dict merged over the defaults (loaded from disk when None)
            store: Persistence backend (built from the 'storage' section when None)
            decision_channel: UI asking the user (NullDecisionChannel when None)
            notification_channel: Receiver of detection events (logs when None)
            scheduler: Timer factory for decision timeouts and the stale sweep
            clock: Time source (seconds)

        Raises:
            ConfigError: if an explicit config does not validate
        """
        if config is not None:
            validate_config(config)
            self.config = merge_config(DEFAULT_CONFIG, config)
        else:
            self.config = load_config()
        set_log_level(self.config.get("log_level", "INFO"))

        self._clock = clock
        self.whitelisted_domains = [
            d.lower().lstrip(".") for d in self.config.get("whitelisted_domains", []) if d
        ]

        self.store = GuardedStore(store or create_store(get_section(self.config, "storage")))
        self.decision_channel = decision_channel or NullDecisionChannel()
        self.notification_channel = notification_channel or LoggingNotificationChannel()

        self.extractor = FeatureExtractor()
        self.scorer = ConfidenceScorer(get_section(self.config, "scoring"))
        self.governor = ThrottleGovernor(get_section(self.config, "throttle"), clock=clock)
        self.cache = EvictionCache(get_section(self.config, "cache"), store=self.store, clock=clock)
        self.pattern_store = PatternStore(
            get_section(self.config, "learning"), store=self.store, clock=clock
        )
        self._stats_lock = threading.Lock()
        self.scheduler = scheduler or ThreadingScheduler()
        self.coordinator = DecisionCoordinator(
            self.pattern_store,
            self.cache,
            channel=self.decision_channel,
            config=get_section(self.config, "decisions"),
            scheduler=self.scheduler,
            store=self.store,
            clock=clock,
            on_resolved=self._count_resolution,
        )

        self.coordinator.restore_pending()

        # Stale sweep: every staleness window, plus inline catch-up when overdue
        self.sweep_interval = self.cache.stale_seconds
        self._last_sweep = clock()
        self._sweep_lock = threading.Lock()
        self._sweep_task = None
        self._stopped = False
        self._schedule_sweep()

        logger.info(f"PopupGuard engine {__version__} ready")

    # --- pipeline ---

    def process_candidate(
        self, element: ElementAccessor, url: str, popup_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Run one candidate element through the pipeline.

        Never raises: failures are reported as status 'error'.

        Returns:
            Dict with 'status' (throttled, whitelisted, ignored, duplicate,
            pending, auto_resolved or error) and, once scored, the candidate's
            popupId, confidence, tier, signals, characteristics and suggestion.
        """
        try:
            popup_id = sanitize_popup_id(popup_id) if popup_id else f"popup_{uuid.uuid4().hex[:12]}"
            url = sanitize_url(url)
        except InvalidRecordError as e:
            logger.warning(f"Rejected candidate: {e}")
            return {"status": "error", "error": str(e)}

        domain = extract_domain(url)
        self._sweep_if_overdue()

        # Whitelisted pages never use up throttle slots
        if self._is_whitelisted(domain):
            logger.debug(f"Skipping {popup_id}: {domain} is whitelisted")
            return {"status": "whitelisted", "popupId": popup_id}

        if not self.governor.try_acquire():
            return {"status": "throttled", "popupId": popup_id}

        start = time.perf_counter()
        try:
            return self._process(element, url, domain, popup_id)
        except Exception as e:
            logger.error(f"Detection pipeline failed for {popup_id}: {e}", exc_info=True)
            return {"status": "error", "popupId": popup_id, "error": str(e)}
        finally:
            self.governor.record_latency((time.perf_counter() - start) * 1000)

    def _process(self, element: ElementAccessor, url: str, domain: str, popup_id: str) -> Dict[str, Any]:
        characteristics, cues = self.extractor.analyze(element, domain)
        score = self.scorer.score(characteristics, cues)

        result = {
            "popupId": popup_id,
            "confidence": score.value,
            "tier": score.tier.value,
            "signals": list(score.signals),
            "characteristics": characteristics.to_dict(),
            "suggestion": None,
        }

        if score.tier is Tier.LOW:
            logger.debug(f"Ignoring {popup_id}: score {score.value:.2f} below medium tier")
            return {"status": "ignored", **result}

        candidate = PopupCandidate(
            popup_id=popup_id,
            url=url,
            domain=domain,
            characteristics=characteristics,
            score=score,
            cues=cues,
            detected_at=self._clock(),
        )

        entry = self.coordinator.on_detected(candidate)
        if entry is None:
            return {"status": "duplicate", **result}

        status = "auto_resolved" if entry.status is DecisionStatus.RESOLVED else "pending"
        result["suggestion"] = entry.suggestion.to_dict() if entry.suggestion else None
        if status == "pending":
            self._bump_statistics(totalDetected=1)

        self._notify({"popupId": popup_id, "domain": domain, "status": status, "confidence": score.value})
        return {"status": status, **result}

    def _is_whitelisted(self, domain: str) -> bool:
        if not domain:
            return False
        return any(domain == d or domain.endswith("." + d) for d in self.whitelisted_domains)

    def _notify(self, event: Dict[str, Any]) -> None:
        try:
            self.notification_channel.notify(event)
        except Exception as e:
            logger.warning(f"Notification channel failed: {e}")

    # --- decisions ---

    def on_decision(self, popup_id: str, decision: Any) -> Dict[str, Any]:
        """
        Forward a user decision.

        Returns:
            {'status': 'resolved', 'record': ...} or {'status': 'error', 'error': ...}
        """
        try:
            popup_id = sanitize_popup_id(popup_id)
            decision = sanitize_decision(decision)
        except InvalidRecordError as e:
            logger.warning(f"Rejected decision: {e}")
            return {"status": "error", "error": str(e)}

        try:
            record = self.coordinator.on_decision(popup_id, decision)
        except Exception as e:
            logger.error(f"Decision handling failed for {popup_id}: {e}", exc_info=True)
            return {"status": "error", "error": str(e)}

        if record is None:
            return {"status": "error", "error": "no_pending_decision", "popupId": popup_id}
        return {"status": "resolved", "record": record.to_dict()}

    # --- host signals ---

    def set_visible(self, visible: bool) -> None:
        self.governor.set_visible(bool(visible))

    def report_memory_usage(self, usage_ratio: float) -> Dict[str, int]:
        """
        Forward memory telemetry; above the threshold the history is shed too.

        Returns:
            Evicted counts per log (empty when under the threshold)
        """
        self.governor.report_memory_usage(usage_ratio)
        if usage_ratio > self.governor.memory_threshold:
            return self.apply_memory_pressure()
        return {}

    def apply_memory_pressure(self) -> Dict[str, int]:
        return self.cache.apply_memory_pressure()

    def sweep(self) -> Dict[str, Any]:
        """Periodic maintenance: expire stale decisions and prune old patterns."""
        with self._sweep_lock:
            self._last_sweep = self._clock()
        expired = self.coordinator.sweep_stale()
        pruned = self.pattern_store.prune()
        return {"expired": expired, "pruned_patterns": pruned}

    def _schedule_sweep(self) -> None:
        with self._sweep_lock:
            if self._stopped:
                return
            try:
                self._sweep_task = self.scheduler.call_later(self.sweep_interval, self._run_scheduled_sweep)
            except TimerError as e:
                # Detections still trigger the sweep once it is overdue
                self._sweep_task = None
                logger.warning(f"Could not schedule the stale sweep: {e}")

    def _run_scheduled_sweep(self) -> None:
        try:
            self.sweep()
        except Exception as e:
            logger.error(f"Scheduled sweep failed: {e}", exc_info=True)
        finally:
            self._schedule_sweep()

    def _sweep_if_overdue(self) -> None:
        with self._sweep_lock:
            overdue = self._clock() - self._last_sweep >= self.sweep_interval
        if overdue:
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Stale sweep failed: {e}", exc_info=True)

    # --- statistics ---

    def _default_statistics(self) -> Dict[str, Any]:
        return {
            "totalDetected": 0,
            "totalClosed": 0,
            "totalKept": 0,
            "totalTimedOut": 0,
            "lastReset": self._clock(),
        }

    def _load_statistics(self) -> Dict[str, Any]:
        stored = self.store.get(NS_USER_PREFERENCES, ["statistics"]).get("statistics")
        stats = self._default_statistics()
        if isinstance(stored, dict):
            stats.update({k: v for k, v in stored.items() if k in stats})
        return stats

    def _bump_statistics(self, **increments: int) -> None:
        # Detections, decisions and timer threads all update the same counters
        with self._stats_lock:
            stats = self._load_statistics()
            for key, amount in increments.items():
                stats[key] = stats.get(key, 0) + amount
            self.store.set(NS_USER_PREFERENCES, {"statistics": stats})

    def _count_resolution(self, record: PopupRecord) -> None:
        if record.auto_resolved:
            self._bump_statistics(totalDetected=1)
        if record.user_decision is UserDecision.CLOSE:
            self._bump_statistics(totalClosed=1)
        elif record.user_decision is UserDecision.KEEP:
            self._bump_statistics(totalKept=1)
        elif record.user_decision is UserDecision.TIMEOUT:
            self._bump_statistics(totalTimedOut=1)

    def get_statistics(self) -> Dict[str, Any]:
        stats = self._load_statistics()
        stats["pendingDecisions"] = self.coordinator.pending_count
        stats["historySize"] = len(self.cache.history())
        stats["learningPatterns"] = len(self.pattern_store.patterns)
        return stats

    def reset_statistics(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = self._default_statistics()
            self.store.set(NS_USER_PREFERENCES, {"statistics": stats})
        logger.info("Statistics reset")
        return stats

    # --- message API ---

    def handle_message(self, message: dict) -> dict:
        """
        Traite un message JSON venant de l'extension.
        """
        if not isinstance(message, dict):
            return {"status": "error", "error": "Message must be an object"}

        msg_type = message.get("type")
        payload = message.get("payload") or {}
        if not isinstance(payload, dict):
            return {"status": "error", "error": "Payload must be an object"}

        handler = {
            "ping": lambda p: {"type": "pong", "status": "ok"},
            "popup_detected": self._handle_popup_detected,
            "user_decision": self._handle_user_decision,
            "visibility": self._handle_visibility,
            "memory_pressure": self._handle_memory_pressure,
            "get_statistics": lambda p: {"status": "ok", "statistics": self.get_statistics()},
            "get_pending_decisions": self._handle_pending_decisions,
            "get_user_decisions": self._handle_user_decisions,
            "get_learning_statistics": lambda p: {
                "status": "ok",
                "learning": self.pattern_store.get_learning_statistics(),
            },
            "health": lambda p: self._handle_health(),
        }.get(msg_type)

        if handler is None:
            return {"status": "error", "error": "Unknown message type"}

        try:
            return handler(payload)
        except InvalidRecordError as e:
            logger.warning(f"Invalid '{msg_type}' message: {e}")
            return {"status": "error", "error": str(e)}
        except Exception as e:
            logger.error(f"Failed to handle '{msg_type}' message: {e}", exc_info=True)
            return {"status": "error", "error": "Internal error"}

    def _handle_popup_detected(self, payload: dict) -> dict:
        element = SnapshotElement(sanitize_snapshot(payload.get("element")))
        return self.process_candidate(element, payload.get("url", ""), payload.get("popupId"))

    def _handle_user_decision(self, payload: dict) -> dict:
        return self.on_decision(payload.get("popupId"), payload.get("decision"))

    def _handle_visibility(self, payload: dict) -> dict:
        visible = payload.get("visible", True)
        self.set_visible(visible)
        return {"status": "ok", "suspended": self.governor.suspended}

    def _handle_memory_pressure(self, payload: dict) -> dict:
        usage = payload.get("usage")
        if usage is None:
            evicted = self.apply_memory_pressure()
        else:
            try:
                usage = float(usage)
            except (TypeError, ValueError):
                raise InvalidRecordError(f"invalid memory usage: {usage!r}")
            evicted = self.report_memory_usage(usage)
        return {"status": "ok", "evicted": evicted, "limit": self.governor.limit}

    def _handle_pending_decisions(self, payload: dict) -> dict:
        domain = payload.get("domain")
        return {"status": "ok", "pending": self.coordinator.pending_decisions(domain)}

    def _handle_user_decisions(self, payload: dict) -> dict:
        """Decision log filtered by domain, decision and date range, newest first."""
        decision = payload.get("decision")
        if decision is not None:
            try:
                decision = UserDecision(str(decision).strip().lower())
            except ValueError:
                raise InvalidRecordError(f"invalid decision filter: {decision!r}")

        bounds = {}
        for key, name in (("dateFrom", "date_from"), ("dateTo", "date_to")):
            value = payload.get(key)
            if value is None:
                continue
            try:
                bounds[name] = float(value)
            except (TypeError, ValueError):
                raise InvalidRecordError(f"invalid {key}: {value!r}")

        records = self.cache.decisions(domain=payload.get("domain"), decision=decision, **bounds)
        return {"status": "ok", "decisions": [r.to_dict() for r in records]}

    def _handle_health(self) -> dict:
        """Return health status of the engine."""
        degraded = self.store.failures > 0
        return {
            "status": "degraded" if degraded else "ok",
            "version": __version__,
            "store_failures": self.store.failures,
            "pending_decisions": self.coordinator.pending_count,
            "learning_enabled": self.pattern_store.learning_enabled,
            "throttle": self.governor.get_status(),
            "cache": self.cache.get_stats(),
        }

    # --- lifecycle ---

    def shutdown(self) -> None:
        """Cancel outstanding timers; pending decisions stay persisted for restore."""
        with self._sweep_lock:
            self._stopped = True
            if self._sweep_task is not None:
                self._sweep_task.cancel()
                self._sweep_task = None
        self.coordinator.shutdown()
        logger.info("PopupGuard engine stopped")
