"""
GenStudio Completion Notifications
Explicit output channel for "job completed" events (pub/sub)
"""
import asyncio
import json
import threading
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Deque, Dict, List, Tuple


# ============================================================
# EVENT TYPES
# ============================================================

@dataclass
class CompletionEvent:
    """Published once per record that transitions into ``completed``."""
    id: str
    type: str
    prompt: str
    event_id: str = field(default_factory=lambda: f"evt_{uuid.uuid4().hex[:8]}")
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat() + "Z")

    def payload(self) -> Dict:
        return {"id": self.id, "type": self.type, "prompt": self.prompt}

    def to_sse(self) -> str:
        """Format as SSE message"""
        body = {
            "type": "generation.completed",
            "data": self.payload(),
            "timestamp": self.timestamp,
        }
        return f"id: {self.event_id}\nevent: generation.completed\ndata: {json.dumps(body)}\n\n"


# ============================================================
# CHANNEL (Pub/Sub)
# ============================================================

class NotificationChannel:
    """Fan-out queue of completion events.

    ``publish`` may be called from any thread; each subscriber owns an
    ``asyncio.Queue`` bound to the loop it subscribed from.
    """

    def __init__(self, history_size: int = 100):
        self._lock = threading.Lock()
        self._subscribers: Dict[str, Tuple[asyncio.AbstractEventLoop, asyncio.Queue]] = {}
        self._recent: Deque[CompletionEvent] = deque(maxlen=history_size)

    def subscribe(self) -> Tuple[str, asyncio.Queue]:
        """Register a subscriber on the running loop"""
        subscriber_id = f"sub_{uuid.uuid4().hex[:8]}"
        queue: asyncio.Queue = asyncio.Queue()
        with self._lock:
            self._subscribers[subscriber_id] = (asyncio.get_running_loop(), queue)
        return subscriber_id, queue

    def unsubscribe(self, subscriber_id: str) -> None:
        with self._lock:
            self._subscribers.pop(subscriber_id, None)

    def publish(self, event: CompletionEvent) -> None:
        with self._lock:
            self._recent.append(event)
            targets = list(self._subscribers.values())

        for loop, queue in targets:
            if loop.is_closed():
                continue
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is loop:
                queue.put_nowait(event)
            else:
                loop.call_soon_threadsafe(queue.put_nowait, event)

    def recent(self, limit: int = 20) -> List[CompletionEvent]:
        with self._lock:
            events = list(self._recent)
        return events[-limit:] if limit else events

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @staticmethod
    def as_dict(event: CompletionEvent) -> Dict:
        return asdict(event)
