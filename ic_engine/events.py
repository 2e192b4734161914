"""
IC Engine - Event Stream
========================

Change notifications published by the logic model and the pistons.

Presentation layers subscribe instead of polling:

    def on_event(event):
        print(f"{event.kind.value}: {event.object_id} {event.detail}")

    token = model.events.subscribe(on_event, kinds={EventKind.NET_CHANGED})
    ...
    model.events.unsubscribe(token)

Subscriber exceptions are logged and never reach the publisher.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set


class EventKind(Enum):
    """Kinds of model change notifications"""
    OBJECT_INSERTED = 'object_inserted'
    OBJECT_REMOVED = 'object_removed'
    OBJECT_CHANGED = 'object_changed'
    NET_CHANGED = 'net_changed'
    VIOLATIONS_CHANGED = 'violations_changed'
    MATCH_PROGRESS = 'match_progress'
    TEMPLATE_CHANGED = 'template_changed'
    MODULE_CHANGED = 'module_changed'


@dataclass
class ModelEvent:
    """A single change notification."""
    kind: EventKind
    object_id: int = 0
    detail: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict:
        return {
            'kind': self.kind.value,
            'object_id': self.object_id,
            'detail': dict(self.detail),
            'timestamp': self.timestamp,
        }


@dataclass
class _Subscription:
    callback: Callable[[ModelEvent], None]
    kinds: Optional[Set[EventKind]] = None


class EventBus:
    """Synchronous publish/subscribe hub with a bounded history."""

    def __init__(self, history_size: int = 256, verbose: bool = False):
        self.verbose = verbose
        self._subscribers: Dict[int, _Subscription] = {}
        self._next_token = 1
        self._history = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[ModelEvent], None],
                  kinds: Optional[Iterable[EventKind]] = None) -> int:
        """Register a callback; returns a token for unsubscribe()."""
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscribers[token] = _Subscription(
                callback, set(kinds) if kinds is not None else None)
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._subscribers.pop(token, None) is not None

    def publish(self, kind: EventKind, object_id: int = 0, **detail) -> ModelEvent:
        event = ModelEvent(kind=kind, object_id=object_id, detail=detail)
        with self._lock:
            self._history.append(event)
            subscribers = list(self._subscribers.values())

        for sub in subscribers:
            if sub.kinds is not None and kind not in sub.kinds:
                continue
            try:
                sub.callback(event)
            except Exception as e:
                self._log(f"[EVENTS] Subscriber error on {kind.value}: {e}")
        return event

    @property
    def history(self) -> List[ModelEvent]:
        with self._lock:
            return list(self._history)

    def clear_history(self):
        with self._lock:
            self._history.clear()

    def _log(self, message: str):
        """Log a message if verbose mode is enabled"""
        if self.verbose:
            print(message)
