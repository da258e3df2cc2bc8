from typing import Any, Callable, Dict, List
from dataclasses import dataclass
import asyncio


@dataclass
class Event:
    type: str
    payload: Dict[str, Any]


class EventBus:
    def __init__(self):
        self.subscribers: List[Callable[[Event], None]] = []
        self._pending = set()

    def subscribe(self, callback: Callable[[Event], None]):
        self.subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[Event], None]):
        if callback in self.subscribers:
            self.subscribers.remove(callback)

    def publish(self, event_type: str, **kwargs):
        event = Event(type=event_type, payload=kwargs)
        for callback in list(self.subscribers):
            # If callback is a coroutine, schedule it
            if asyncio.iscoroutinefunction(callback):
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    # No running loop, can't schedule async callback
                    continue
                task = loop.create_task(callback(event))
                # Keep a reference until done so the task is not collected
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
            else:
                callback(event)


# Global event bus
event_bus = EventBus()
