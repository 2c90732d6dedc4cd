from __future__ import annotations

import json
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Canonical progress-event vocabulary shared by server and client."""

    AGENT_START = "agent_start"
    AGENT_UPDATE = "agent_update"
    AGENT_COMPLETED = "agent_completed"
    STREAM_RESPONSE = "stream_response"
    STREAM_END = "stream_end"
    CHAT_RESPONSE = "chat_response"
    COST_UPDATE = "cost_update"
    ERROR = "error"


# Historical spellings seen on the wire, mapped onto the canonical members.
WIRE_TYPE_ALIASES: dict[str, EventType] = {
    "agentStart": EventType.AGENT_START,
    "agentUpdate": EventType.AGENT_UPDATE,
    "agentCompleted": EventType.AGENT_COMPLETED,
    "streamResponse": EventType.STREAM_RESPONSE,
    "stream": EventType.STREAM_RESPONSE,
    "streamEnd": EventType.STREAM_END,
    "end": EventType.STREAM_END,
    "complete": EventType.STREAM_END,
    "finished": EventType.STREAM_END,
    "chatResponse": EventType.CHAT_RESPONSE,
    "costUpdate": EventType.COST_UPDATE,
    "liveCostsUpdate": EventType.COST_UPDATE,
    "updateLiveCosts": EventType.COST_UPDATE,
    "error": EventType.ERROR,
}
WIRE_TYPE_ALIASES.update({member.value: member for member in EventType})


class FrameDecodeError(ValueError):
    """Raised when an inbound frame cannot be mapped to a known message."""


class ProgressEvent(BaseModel):
    """A typed pipeline notification forwarded over the persistent connection."""

    type: EventType
    message: Optional[str] = None
    content: Optional[str] = None
    is_final: bool = False
    data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def agent_start(cls, message: str) -> "ProgressEvent":
        return cls(type=EventType.AGENT_START, message=message)

    @classmethod
    def agent_update(cls, message: str) -> "ProgressEvent":
        return cls(type=EventType.AGENT_UPDATE, message=message)

    @classmethod
    def agent_completed(cls, message: str, is_final: bool = False) -> "ProgressEvent":
        return cls(type=EventType.AGENT_COMPLETED, message=message, is_final=is_final)

    @classmethod
    def stream_response(cls, content: str) -> "ProgressEvent":
        return cls(type=EventType.STREAM_RESPONSE, content=content)

    @classmethod
    def stream_end(cls) -> "ProgressEvent":
        return cls(type=EventType.STREAM_END)

    @classmethod
    def chat_response(cls, content: str) -> "ProgressEvent":
        return cls(type=EventType.CHAT_RESPONSE, content=content)

    @classmethod
    def cost_update(cls, total_cost: float, **extra: Any) -> "ProgressEvent":
        return cls(type=EventType.COST_UPDATE, data={"totalCost": total_cost, **extra})

    @classmethod
    def error(cls, message: str, code: str = "PIPELINE_ERROR") -> "ProgressEvent":
        return cls(type=EventType.ERROR, message=message, data={"code": code})

    @property
    def is_terminal(self) -> bool:
        return self.type in {EventType.STREAM_END, EventType.CHAT_RESPONSE, EventType.ERROR}

    def to_wire(self) -> dict[str, Any]:
        """Encode as the JSON frame pushed to clients."""

        payload: dict[str, Any] = {"sender": "bot", "type": self.type.value}
        if self.message is not None:
            payload["message"] = self.message
        if self.content is not None:
            payload["content"] = self.content
        if self.type == EventType.AGENT_COMPLETED:
            payload["isFinal"] = self.is_final
        if self.data:
            payload["data"] = self.data
        return payload


class HandshakeFrame(BaseModel):
    """First frame pushed by the server, carrying the connection identity."""

    client_id: str


InboundFrame = Union[HandshakeFrame, ProgressEvent]


def decode_frame(raw: Union[str, bytes, dict[str, Any]]) -> InboundFrame:
    """Decode one inbound frame into a handshake or a canonical progress event.

    Unknown types and malformed payloads raise ``FrameDecodeError``.
    """

    if isinstance(raw, (str, bytes)):
        try:
            payload = json.loads(raw)
        except ValueError as exc:
            raise FrameDecodeError("Frame is not valid JSON") from exc
    else:
        payload = raw
    if not isinstance(payload, dict):
        raise FrameDecodeError("Frame must be a JSON object")

    client_id = payload.get("clientId")
    if "type" not in payload and isinstance(client_id, str) and client_id:
        return HandshakeFrame(client_id=client_id)

    wire_type = payload.get("type")
    if not isinstance(wire_type, str):
        raise FrameDecodeError("Frame has no type discriminator")
    event_type = WIRE_TYPE_ALIASES.get(wire_type)
    if event_type is None:
        raise FrameDecodeError(f"Unknown frame type: {wire_type}")

    data = payload.get("data")
    nested = data if isinstance(data, dict) else {}
    message = payload.get("message") or payload.get("error") or nested.get("message")
    content = payload.get("content")
    if content is None:
        content = nested.get("content")
    if event_type == EventType.STREAM_RESPONSE and content is None and isinstance(message, str):
        # Older servers streamed tokens in the message field.
        content, message = message, None
    return ProgressEvent(
        type=event_type,
        message=message if isinstance(message, str) else None,
        content=content if isinstance(content, str) else None,
        is_final=bool(payload.get("isFinal", nested.get("isFinal", False))),
        data=nested,
    )
