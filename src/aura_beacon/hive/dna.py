from typing import Any, Protocol, runtime_checkable

import structlog
from pydantic import BaseModel

from .types import Envelope, Event, Observation

logger = structlog.get_logger("diagnostics")


@runtime_checkable
class Transport(Protocol):
    """A single duplex text link to AURA Core."""

    async def connect(self) -> None: ...

    async def send(self, text: str) -> None: ...

    async def recv(self) -> str:
        """Block until the next frame arrives; raise TransportError on link loss."""
        ...

    async def close(self) -> None: ...


@runtime_checkable
class DiagnosticSink(Protocol):
    """Observer of every envelope crossing the link. Must not block or raise."""

    def record(self, event: str, **fields: Any) -> None: ...


@runtime_checkable
class Membrane(Protocol):
    """Inbound/Outbound safety checks (Guardrails)."""

    async def inspect_inbound(self, envelope: Envelope) -> BaseModel:
        """Validate an inbound envelope's payload for its kind."""
        ...

    async def inspect_outbound(self, envelope: Envelope) -> Envelope:
        """Enforce pricing rules on an outbound envelope."""
        ...


@runtime_checkable
class Generator(Protocol):
    """G - Generator: Emits lifecycle events."""

    async def pulse(self, observation: Observation) -> list[Event]: ...


class StructlogDiagnosticSink:
    """Default sink: one structlog record per envelope."""

    def __init__(self, level: str = "debug"):
        self.level = level

    def record(self, event: str, **fields: Any) -> None:
        getattr(logger, self.level)(event, **fields)
