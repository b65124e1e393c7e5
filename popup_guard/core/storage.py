"""
Namespaced persistent storage.

Implementations raise StoreIOError on failure. Components never use them
directly: they go through GuardedStore, which logs failures and turns them
into no-ops so the in-memory state stays authoritative until the next
successful write.
"""

import copy
import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional

from .errors import StoreIOError

logger = logging.getLogger(__name__)

NS_USER_PREFERENCES = "userPreferences"
NS_POPUP_HISTORY = "popupHistory"
NS_USER_DECISIONS = "userDecisions"
NS_LEARNING_PATTERNS = "learningPatterns"
NS_PENDING_DECISIONS = "pendingDecisions"

NAMESPACES = (
    NS_USER_PREFERENCES,
    NS_POPUP_HISTORY,
    NS_USER_DECISIONS,
    NS_LEARNING_PATTERNS,
    NS_PENDING_DECISIONS,
)


def _check_namespace(namespace: str) -> None:
    if namespace not in NAMESPACES:
        raise StoreIOError(f"unknown namespace '{namespace}'")


class PersistentStore(ABC):
    """Key/value storage partitioned into fixed namespaces."""

    @abstractmethod
    def get(self, namespace: str, keys: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        """Return the requested keys (all keys when None). Missing keys are omitted."""
        pass

    @abstractmethod
    def set(self, namespace: str, data: Dict[str, Any]) -> None:
        """Upsert the given keys."""
        pass

    @abstractmethod
    def remove(self, namespace: str, keys: Iterable[str]) -> None:
        """Delete the given keys; unknown keys are ignored."""
        pass


class MemoryStore(PersistentStore):
    """In-process store (default, and for tests)."""

    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {ns: {} for ns in NAMESPACES}
        self._lock = threading.Lock()

    def get(self, namespace: str, keys: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        _check_namespace(namespace)
        with self._lock:
            bucket = self._data[namespace]
            if keys is None:
                return copy.deepcopy(bucket)
            return {k: copy.deepcopy(bucket[k]) for k in keys if k in bucket}

    def set(self, namespace: str, data: Dict[str, Any]) -> None:
        _check_namespace(namespace)
        with self._lock:
            self._data[namespace].update(copy.deepcopy(data))

    def remove(self, namespace: str, keys: Iterable[str]) -> None:
        _check_namespace(namespace)
        with self._lock:
            for key in keys:
                self._data[namespace].pop(key, None)


class JsonFileStore(PersistentStore):
    """
    One JSON file per namespace under data_dir.

    Writes go to a temporary file first and are renamed into place, so a
    crash never leaves a half-written namespace.
    """

    def __init__(self, data_dir: str):
        self.data_dir = os.path.abspath(os.path.expanduser(data_dir))
        self._lock = threading.Lock()

    def _path(self, namespace: str) -> str:
        return os.path.join(self.data_dir, f"{namespace}.json")

    def _read(self, namespace: str) -> Dict[str, Any]:
        path = self._path(namespace)
        if not os.path.exists(path):
            return {}
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StoreIOError(f"cannot read {path}: {e}") from e
        if not isinstance(data, dict):
            raise StoreIOError(f"{path} does not contain an object")
        return data

    def _write(self, namespace: str, data: Dict[str, Any]) -> None:
        path = self._path(namespace)
        tmp_path = path + ".tmp"
        try:
            os.makedirs(self.data_dir, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            raise StoreIOError(f"cannot write {path}: {e}") from e

    def get(self, namespace: str, keys: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        _check_namespace(namespace)
        with self._lock:
            data = self._read(namespace)
        if keys is None:
            return data
        return {k: data[k] for k in keys if k in data}

    def set(self, namespace: str, data: Dict[str, Any]) -> None:
        _check_namespace(namespace)
        with self._lock:
            current = self._read(namespace)
            current.update(data)
            self._write(namespace, current)

    def remove(self, namespace: str, keys: Iterable[str]) -> None:
        _check_namespace(namespace)
        with self._lock:
            current = self._read(namespace)
            for key in keys:
                current.pop(key, None)
            self._write(namespace, current)


class GuardedStore:
    """
    Failure-absorbing wrapper around a PersistentStore.

    Every failure is logged and reported through the return value only:
    get() returns {} and set()/remove() return False.
    """

    def __init__(self, store: PersistentStore):
        self.store = store
        self.failures = 0

    def _failed(self, action: str, namespace: str, error: Exception) -> None:
        self.failures += 1
        logger.warning(f"Store {action} failed for '{namespace}': {error}")

    def get(self, namespace: str, keys: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        try:
            return self.store.get(namespace, keys)
        except Exception as e:
            self._failed("get", namespace, e)
            return {}

    def set(self, namespace: str, data: Dict[str, Any]) -> bool:
        try:
            self.store.set(namespace, data)
            return True
        except Exception as e:
            self._failed("set", namespace, e)
            return False

    def remove(self, namespace: str, keys: Iterable[str]) -> bool:
        try:
            self.store.remove(namespace, list(keys))
            return True
        except Exception as e:
            self._failed("remove", namespace, e)
            return False


def create_store(config: Optional[Dict[str, Any]] = None) -> PersistentStore:
    """Build the store named by the 'storage' config section."""
    config = config or {}
    backend = config.get("backend", "memory")
    if backend == "json":
        return JsonFileStore(config.get("data_dir", os.path.join("~", ".popup_guard", "data")))
    if backend != "memory":
        logger.warning(f"Unknown storage backend '{backend}', falling back to memory")
    return MemoryStore()
