"""Session events emitted by the AI driver during one conversational turn.

The event set is closed:

    TurnStart            the driver began processing a prompt
    ContentFragment      a streamed piece of assistant text (id, text)
    ToolStarted          the driver is invoking a tool (name)
    ToolCompleted        the tool invocation returned (name)
    FinalMessage         full assistant text for one model response
    SessionError         the exchange failed (message); ends the turn
    TurnIdle             the exchange finished; ends the turn

Handlers register through EventHub.subscribe() and receive events only while
the returned Subscription is active.
"""

import sys
import threading
from dataclasses import dataclass
from typing import Callable, Union


@dataclass(frozen=True)
class TurnStart:
    pass


@dataclass(frozen=True)
class ContentFragment:
    id: str
    text: str


@dataclass(frozen=True)
class ToolStarted:
    name: str


@dataclass(frozen=True)
class ToolCompleted:
    name: str


@dataclass(frozen=True)
class FinalMessage:
    text: str


@dataclass(frozen=True)
class SessionError:
    message: str


@dataclass(frozen=True)
class TurnIdle:
    pass


SessionEvent = Union[
    TurnStart, ContentFragment, ToolStarted, ToolCompleted, FinalMessage, SessionError, TurnIdle,
]
EventHandler = Callable[[SessionEvent], None]

TERMINAL_EVENTS = (SessionError, TurnIdle)


class Subscription:
    """Handle for one registered handler. Disposing it twice is harmless."""

    def __init__(self, hub: "EventHub", handler: EventHandler):
        self._hub = hub
        self._handler = handler
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose(self):
        if not self._disposed:
            self._disposed = True
            self._hub._unregister(self._handler)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.dispose()
        return False


class EventHub:
    """Fan-out of session events to the currently registered handlers."""

    def __init__(self):
        self._handlers: list[EventHandler] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: EventHandler) -> Subscription:
        with self._lock:
            self._handlers.append(handler)
        return Subscription(self, handler)

    def _unregister(self, handler: EventHandler):
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    @property
    def handler_count(self) -> int:
        with self._lock:
            return len(self._handlers)

    def publish(self, event: SessionEvent):
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                # A failing handler must not stop delivery of the terminal event
                print(f"WARNING: Session event handler failed on {type(event).__name__}: {e}",
                      file=sys.stderr)
