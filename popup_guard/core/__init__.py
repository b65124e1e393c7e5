"""
Core modules of the popup engine.

This package contains the detection and learning pipeline:
- orchestrator: PopupGuardEngine, wiring and message dispatch
- feature_extractor: Element inspection into Characteristics
- confidence: Rule-based popup scoring and tiers
- pattern_store: Similarity matching and decision learning
- decision_coordinator: Pending decisions and their timeouts
- throttle: Adaptive detection rate limiting
- eviction_cache: Bounded history logs
- storage: Namespaced persistence backends
- scheduler: Cancellable timers
"""

from .confidence import ConfidenceScorer
from .decision_coordinator import DecisionCoordinator
from .errors import (
    ConfigError,
    FeatureExtractionError,
    InvalidRecordError,
    PopupGuardError,
    StoreIOError,
    TimerError,
)
from .eviction_cache import EvictionCache
from .feature_extractor import FeatureExtractor
from .pattern_store import PatternStore, calculate_similarity
from .scheduler import ScheduledTask, Scheduler, ThreadingScheduler
from .storage import GuardedStore, JsonFileStore, MemoryStore, PersistentStore, create_store
from .throttle import ThrottleGovernor

__all__ = [
    "orchestrator",
    "ConfidenceScorer",
    "DecisionCoordinator",
    "EvictionCache",
    "FeatureExtractor",
    "PatternStore",
    "calculate_similarity",
    "ThrottleGovernor",
    "ScheduledTask",
    "Scheduler",
    "ThreadingScheduler",
    "PersistentStore",
    "MemoryStore",
    "JsonFileStore",
    "GuardedStore",
    "create_store",
    "PopupGuardError",
    "FeatureExtractionError",
    "StoreIOError",
    "TimerError",
    "InvalidRecordError",
    "ConfigError",
]
