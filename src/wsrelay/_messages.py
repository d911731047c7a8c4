"""Message and error-event types shared by the hub and the server."""

from __future__ import annotations

import dataclasses
from typing import NewType, Optional

from typing_extensions import Literal

SessionId = NewType("SessionId", int)

Direction = Literal["inbound", "outbound"]


@dataclasses.dataclass(frozen=True)
class Message:
    """A single text frame moving through the hub."""

    payload: str
    direction: Direction
    session_id: Optional[SessionId] = None
    """Originating session for inbound messages. Always `None` for outbound ones."""

    def __post_init__(self) -> None:
        if not isinstance(self.payload, str):
            raise TypeError(f"Message payload must be str, got {type(self.payload)}")
        assert self.direction in ("inbound", "outbound"), self.direction

    @staticmethod
    def inbound(session_id: SessionId, payload: str) -> Message:
        return Message(payload, "inbound", session_id)

    @staticmethod
    def outbound(payload: str) -> Message:
        return Message(payload, "outbound")


class RelayError(Exception):
    """Base class for exceptions raised by wsrelay."""


class SessionClosedError(RelayError):
    """Raised when writing to a session that has already been closed."""


class HubClosedError(RelayError):
    """Raised when connecting to a hub that has been shut down."""


@dataclasses.dataclass(frozen=True)
class HubError:
    """Base class for non-fatal error events. These are reported to observers
    registered with `BroadcastHub.on_error()`, never raised."""

    session_id: Optional[SessionId]


@dataclasses.dataclass(frozen=True)
class SendFailed(HubError):
    """Writing to a session failed during a broadcast. The session has been
    removed from the hub."""

    session_id: SessionId
    reason: str = ""


@dataclasses.dataclass(frozen=True)
class ConsumerUnavailable(HubError):
    """An inbound message arrived while no consumer was registered, so it was
    dropped."""

    session_id: SessionId
    payload: str = ""
