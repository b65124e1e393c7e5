"""
Unit tests for the decision coordinator.

Timers run on the ManualScheduler fixture, so timeouts fire only when the
test advances time.
"""

from unittest.mock import Mock

import pytest

from popup_guard.core.decision_coordinator import DecisionCoordinator
from popup_guard.core.eviction_cache import EvictionCache
from popup_guard.core.models import (
    Characteristics,
    ConfidenceScore,
    DecisionStatus,
    Dimensions,
    LearningPattern,
    PopupCandidate,
    Tier,
    UserDecision,
)
from popup_guard.core.pattern_store import PatternStore
from popup_guard.core.storage import NS_PENDING_DECISIONS, GuardedStore, MemoryStore

CHARS = Characteristics(True, True, True, True, 9999, Dimensions(400, 300))


def _candidate(clock, popup_id="p1"):
    return PopupCandidate(
        popup_id=popup_id,
        url="https://example.com/page",
        domain="example.com",
        characteristics=CHARS,
        score=ConfidenceScore(0.85, Tier.HIGH),
        detected_at=clock(),
    )


@pytest.fixture
def store():
    return GuardedStore(MemoryStore())


@pytest.fixture
def channel():
    return Mock()


@pytest.fixture
def coordinator(clock, scheduler, store, channel):
    patterns = PatternStore(store=store, clock=clock)
    cache = EvictionCache(store=store, clock=clock)
    return DecisionCoordinator(
        patterns, cache, channel, {"pending_decision_timeout_ms": 15000},
        scheduler=scheduler, store=store, clock=clock,
    )


class TestDetection:
    """Tests for on_detected."""

    def test_creates_pending_and_presents(self, coordinator, channel, scheduler, clock):
        """A candidate becomes pending, is presented, and has a timer."""
        entry = coordinator.on_detected(_candidate(clock))

        assert entry.status is DecisionStatus.AWAITING
        assert coordinator.is_pending("p1")
        assert len(scheduler.active) == 1
        channel.present.assert_called_once()

    def test_duplicate_ignored(self, coordinator, clock, scheduler):
        """One pending decision per popup."""
        coordinator.on_detected(_candidate(clock))

        assert coordinator.on_detected(_candidate(clock)) is None
        assert coordinator.pending_count == 1
        assert len(scheduler.active) == 1

    def test_persisted(self, coordinator, store, clock):
        """Pending entries are mirrored in the store."""
        coordinator.on_detected(_candidate(clock))

        assert "p1" in store.get(NS_PENDING_DECISIONS)

    def test_channel_failure_tolerated(self, coordinator, channel, clock):
        """An unreachable UI does not break detection."""
        channel.present.side_effect = RuntimeError("tab closed")

        entry = coordinator.on_detected(_candidate(clock))
        assert entry is not None
        assert coordinator.is_pending("p1")

    def test_suggestion_attached(self, coordinator, clock):
        """A confident matching pattern is attached as a suggestion."""
        coordinator.pattern_store.add_pattern(
            LearningPattern("pattern_x", CHARS, UserDecision.CLOSE, 0.9, occurrences=5, last_seen=clock())
        )

        entry = coordinator.on_detected(_candidate(clock))
        assert entry.suggestion.suggestion is UserDecision.CLOSE
        assert entry.status is DecisionStatus.AWAITING


class TestResolution:
    """Tests for on_decision and timeouts."""

    def test_decision_resolves(self, coordinator, clock, scheduler, channel, store):
        """A decision produces a record, learns, and cancels the timer."""
        coordinator.on_detected(_candidate(clock))
        clock.advance(3)

        record = coordinator.on_decision("p1", "close")

        assert record.user_decision is UserDecision.CLOSE
        assert record.response_time == 3
        assert not coordinator.is_pending("p1")
        assert scheduler.active == []
        assert len(coordinator.cache.history()) == 1
        assert len(coordinator.pattern_store.patterns) == 1
        assert store.get(NS_PENDING_DECISIONS) == {}
        channel.notify_result.assert_called_once_with("p1", UserDecision.CLOSE)

    def test_timeout_records_without_learning(self, coordinator, clock, scheduler, channel):
        """After 15s the entry expires with a timeout record."""
        coordinator.on_detected(_candidate(clock))

        assert scheduler.advance(14.9) == 0
        assert scheduler.advance(0.2) == 1

        history = coordinator.cache.history()
        assert [r.user_decision for r in history] == [UserDecision.TIMEOUT]
        assert coordinator.pattern_store.patterns == []
        assert not coordinator.is_pending("p1")
        channel.notify_timeout.assert_called_once_with("p1")

    def test_decision_after_timeout_ignored(self, coordinator, clock, scheduler):
        """Exactly one resolution: a late decision does nothing."""
        coordinator.on_detected(_candidate(clock))
        scheduler.advance(16)

        assert coordinator.on_decision("p1", UserDecision.KEEP) is None
        assert len(coordinator.cache.history()) == 1

    def test_timeout_after_decision_ignored(self, coordinator, clock):
        """A timer firing after resolution finds nothing."""
        coordinator.on_detected(_candidate(clock))
        coordinator.on_decision("p1", "keep")

        coordinator._on_timeout("p1")
        assert len(coordinator.cache.history()) == 1

    def test_dismiss_recorded_not_learned(self, coordinator, clock):
        """Dismiss goes to history only."""
        coordinator.on_detected(_candidate(clock))

        record = coordinator.on_decision("p1", "dismiss")
        assert record.user_decision is UserDecision.DISMISS
        assert coordinator.pattern_store.patterns == []

    @pytest.mark.parametrize("decision", ["timeout", "maybe", None])
    def test_invalid_decision_rejected(self, coordinator, clock, decision):
        """Only close/keep/dismiss are accepted; the entry stays pending."""
        coordinator.on_detected(_candidate(clock))

        assert coordinator.on_decision("p1", decision) is None
        assert coordinator.is_pending("p1")

    def test_unknown_popup(self, coordinator):
        """Deciding on an unknown popup does nothing."""
        assert coordinator.on_decision("ghost", "close") is None

    def test_resolution_hook(self, clock, scheduler, store):
        """on_resolved sees every record."""
        seen = []
        coordinator = DecisionCoordinator(
            PatternStore(clock=clock), EvictionCache(clock=clock), None, {},
            scheduler=scheduler, store=store, clock=clock, on_resolved=seen.append,
        )
        coordinator.on_detected(_candidate(clock))
        coordinator.on_decision("p1", "close")

        assert [r.id for r in seen] == ["p1"]


class TestAutoAction:
    """Auto-resolution from confident patterns."""

    def test_auto_resolves_when_enabled(self, clock, scheduler, channel):
        """With auto-action on, a suggestion resolves immediately."""
        patterns = PatternStore(clock=clock)
        patterns.add_pattern(LearningPattern("pattern_x", CHARS, UserDecision.CLOSE, 0.9, last_seen=clock()))
        coordinator = DecisionCoordinator(
            patterns, EvictionCache(clock=clock), channel,
            {"auto_action_enabled": True}, scheduler=scheduler, clock=clock,
        )

        entry = coordinator.on_detected(_candidate(clock))

        assert entry.status is DecisionStatus.RESOLVED
        assert not coordinator.is_pending("p1")
        assert scheduler.tasks == []
        record = coordinator.cache.history()[0]
        assert record.auto_resolved is True
        assert record.user_decision is UserDecision.CLOSE
        # Auto-resolutions do not reinforce their own pattern
        assert patterns.patterns[0].occurrences == 1
        channel.present.assert_not_called()


class TestSweepAndLifecycle:
    """Stale sweep, restore and shutdown."""

    def test_sweep_expires_stale(self, coordinator, clock, scheduler):
        """Entries older than five minutes are force-expired."""
        coordinator.on_detected(_candidate(clock))
        # Simulate a timer that never fired
        scheduler.tasks[0].cancel()
        clock.advance(301)

        assert coordinator.sweep_stale() == ["p1"]
        assert coordinator.cache.history()[0].user_decision is UserDecision.TIMEOUT

    def test_sweep_keeps_fresh(self, coordinator, clock):
        """Fresh entries survive the sweep."""
        coordinator.on_detected(_candidate(clock))
        clock.advance(10)

        assert coordinator.sweep_stale() == []
        assert coordinator.is_pending("p1")

    def test_pending_summaries(self, coordinator, clock):
        """pending_decisions() lists summaries, filterable by domain."""
        coordinator.on_detected(_candidate(clock, "p1"))
        coordinator.on_detected(_candidate(clock, "p2"))

        assert {d["popupId"] for d in coordinator.pending_decisions()} == {"p1", "p2"}
        assert coordinator.pending_decisions("other.org") == []

    def test_shutdown_cancels_timers(self, coordinator, clock, scheduler):
        """shutdown() cancels every timer."""
        coordinator.on_detected(_candidate(clock, "p1"))
        coordinator.on_detected(_candidate(clock, "p2"))

        coordinator.shutdown()
        assert scheduler.active == []
        assert coordinator.pending_count == 0

    def test_restore_rearms_remaining_time(self, clock, scheduler, store):
        """Stored entries are restored with what is left of their timeout."""
        first = DecisionCoordinator(
            PatternStore(clock=clock), EvictionCache(clock=clock), None, {},
            scheduler=scheduler, store=store, clock=clock,
        )
        first.on_detected(_candidate(clock))
        first.shutdown()
        clock.advance(10)

        second = DecisionCoordinator(
            PatternStore(clock=clock), EvictionCache(clock=clock), None, {},
            scheduler=scheduler, store=store, clock=clock,
        )
        assert second.restore_pending() == 1
        assert second.is_pending("p1")
        assert scheduler.active[-1].due == pytest.approx(clock() + 5)

    def test_restore_minimum_delay(self, clock, scheduler, store):
        """Overdue entries get at least one second."""
        first = DecisionCoordinator(
            PatternStore(clock=clock), EvictionCache(clock=clock), None, {},
            scheduler=scheduler, store=store, clock=clock,
        )
        first.on_detected(_candidate(clock))
        first.shutdown()
        clock.advance(60)

        second = DecisionCoordinator(
            PatternStore(clock=clock), EvictionCache(clock=clock), None, {},
            scheduler=scheduler, store=store, clock=clock,
        )
        second.restore_pending()
        assert scheduler.active[-1].due == pytest.approx(clock() + 1)

    def test_restore_drops_stale(self, clock, scheduler, store):
        """Entries past the staleness window are discarded."""
        first = DecisionCoordinator(
            PatternStore(clock=clock), EvictionCache(clock=clock), None, {},
            scheduler=scheduler, store=store, clock=clock,
        )
        first.on_detected(_candidate(clock))
        first.shutdown()
        clock.advance(400)

        second = DecisionCoordinator(
            PatternStore(clock=clock), EvictionCache(clock=clock), None, {},
            scheduler=scheduler, store=store, clock=clock,
        )
        assert second.restore_pending() == 0
        assert store.get(NS_PENDING_DECISIONS) == {}
