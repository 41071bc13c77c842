"""Host capabilities the tracking client depends on.

A page (or any other host) feeds raw signals into a ``SignalHub`` and offers a
``PersistentStore`` for values that must survive a reload. Everything else in
the client talks to these two objects only, which keeps it testable headlessly.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

SignalHandler = Callable[[str, Dict[str, Any]], None]


class SignalHub:
    """Fan-out of named page signals (click, scroll, visibilitychange, ...)."""

    def __init__(self):
        self._handlers: Dict[str, List[SignalHandler]] = {}

    def on_signal(self, kind: str, handler: SignalHandler) -> Callable[[], None]:
        """Register a handler and return a callable that unregisters it."""
        self._handlers.setdefault(kind, []).append(handler)

        def unsubscribe():
            handlers = self._handlers.get(kind, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def emit(self, kind: str, **data: Any):
        for handler in list(self._handlers.get(kind, [])):
            try:
                handler(kind, data)
            except Exception:
                logger.exception(f"Signal handler failed for '{kind}'")

    def handler_count(self, kind: str) -> int:
        return len(self._handlers.get(kind, []))


class PersistentStore:
    """Key/value slot storage (localStorage equivalent)."""

    def get_persistent_value(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set_persistent_value(self, key: str, value: str):
        raise NotImplementedError

    def remove_persistent_value(self, key: str):
        raise NotImplementedError


class MemoryStore(PersistentStore):
    """Process-local store, used by tests and hosts without durable storage."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.values: Dict[str, str] = dict(initial or {})

    def get_persistent_value(self, key: str) -> Optional[str]:
        return self.values.get(key)

    def set_persistent_value(self, key: str, value: str):
        self.values[key] = value

    def remove_persistent_value(self, key: str):
        self.values.pop(key, None)


class JsonFileStore(PersistentStore):
    """Store every slot in a single JSON file."""

    def __init__(self, path: Optional[Path] = None):
        self.path = path or Path.home() / ".beacon-crm" / "client_store.json"
        self._values = self._load()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
            return {str(k): str(v) for k, v in data.items()}
        except (OSError, ValueError, AttributeError) as e:
            logger.error(f"Error loading client store {self.path}: {e}")
            return {}

    def _save(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        with open(tmp_path, 'w') as f:
            json.dump(self._values, f, indent=2)
        os.replace(tmp_path, self.path)

    def get_persistent_value(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set_persistent_value(self, key: str, value: str):
        self._values[key] = value
        self._save()

    def remove_persistent_value(self, key: str):
        if key in self._values:
            del self._values[key]
            self._save()
