import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from aura_beacon.errors import ProtocolError


class MessageKind(str, Enum):
    BEACON_REGISTER = "BEACON_REGISTER"
    INQUIRY = "INQUIRY"
    PROPOSITION = "PROPOSITION"
    NEGOTIATION = "NEGOTIATION"
    TRANSACTION = "TRANSACTION"
    CONFIRMATION = "CONFIRMATION"


class Envelope(BaseModel):
    """A single message exchanged with AURA Core.

    The payload layout belongs to the AURA protocol; only the routing
    fields are interpreted here.
    """

    kind: MessageKind
    correlation_id: str | None = None
    sender: str = ""
    recipient: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)
    envelope_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, text: str | bytes) -> "Envelope":
        try:
            return cls.model_validate_json(text)
        except ValidationError as e:
            raise ProtocolError(f"Malformed envelope: {e.error_count()} error(s)") from e


@dataclass
class Observation:
    """Outcome of handling one inbound envelope."""

    success: bool
    data: Any
    event_type: str = ""
    correlation_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Event:
    """An event emitted to the Beacon's event stream (NATS)."""

    topic: str
    payload: dict[str, Any]
    timestamp: float = field(default_factory=time.time)
