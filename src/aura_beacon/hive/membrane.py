from collections.abc import Callable
from typing import Any, Literal

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from aura_beacon.errors import ProtocolError

from .types import Envelope, MessageKind

logger = structlog.get_logger(__name__)

FloorLookup = Callable[[str], float | None]


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow")


class InquiryPayload(_Payload):
    query: str = ""
    category: str | None = None
    max_price: float | None = Field(None, gt=0, allow_inf_nan=False)
    budget_max: float | None = Field(None, gt=0, allow_inf_nan=False)
    features: list[str] = Field(default_factory=list)
    quantity: int = Field(1, ge=1)
    currency: str = "USD"


class NegotiationPayload(_Payload):
    action: Literal["counter", "accept", "decline"]
    price: float | None = Field(None, gt=0, allow_inf_nan=False)
    proposition_id: str | None = None
    currency: str | None = None
    scope: Literal["proposition", "session"] = "proposition"


class TransactionPayload(_Payload):
    proposition_id: str | None = None
    price: float | None = Field(None, gt=0, allow_inf_nan=False)


class ConfirmationPayload(_Payload):
    status: str = "completed"
    order_ref: str | None = None


class RegisterPayload(_Payload):
    beacon_id: str | None = None
    status: str | None = None


INBOUND_PAYLOADS: dict[MessageKind, type[_Payload]] = {
    MessageKind.INQUIRY: InquiryPayload,
    MessageKind.NEGOTIATION: NegotiationPayload,
    MessageKind.TRANSACTION: TransactionPayload,
    MessageKind.CONFIRMATION: ConfirmationPayload,
    MessageKind.BEACON_REGISTER: RegisterPayload,
}


class BeaconMembrane:
    """The Immune System: deterministic guardrails for inbound and outbound envelopes."""

    def __init__(self, floor_lookup: FloorLookup | None = None):
        self.floor_lookup = floor_lookup

    async def inspect_inbound(self, envelope: Envelope) -> _Payload:
        """
        Validate an inbound envelope's payload for its kind.

        Every kind except BEACON_REGISTER must carry a correlation id.
        """
        model = INBOUND_PAYLOADS.get(envelope.kind)
        if model is None:
            logger.warning("membrane_inbound_unsupported_kind", kind=envelope.kind.value)
            raise ProtocolError(
                f"Unsupported inbound kind {envelope.kind.value}",
                correlation_id=envelope.correlation_id,
            )

        if envelope.kind != MessageKind.BEACON_REGISTER and not envelope.correlation_id:
            logger.warning("membrane_inbound_missing_correlation_id", kind=envelope.kind.value)
            raise ProtocolError(f"{envelope.kind.value} without correlation id")

        try:
            return model.model_validate(envelope.payload)
        except ValidationError as e:
            logger.warning(
                "membrane_inbound_invalid_payload",
                kind=envelope.kind.value,
                errors=e.error_count(),
            )
            raise ProtocolError(
                f"Invalid {envelope.kind.value} payload: {e.errors()[0]['msg']}",
                correlation_id=envelope.correlation_id,
            ) from e

    async def inspect_outbound(self, envelope: Envelope) -> Envelope:
        """
        Enforce hard economic rules on outbound propositions.

        Rule: NEVER offer below an item's floor price.
        """
        if envelope.kind != MessageKind.PROPOSITION or self.floor_lookup is None:
            return envelope

        overridden = False
        propositions: list[dict[str, Any]] = []
        for proposition in envelope.payload.get("propositions", []):
            pricing = proposition.get("pricing", {})
            floor = self.floor_lookup(proposition.get("item_id", ""))
            offer = pricing.get("offer_price")
            if floor is not None and offer is not None and offer < floor:
                logger.warning(
                    "membrane_rule_violation",
                    rule="floor_price",
                    proposed=offer,
                    floor=floor,
                    item_id=proposition.get("item_id"),
                )
                proposition = {
                    **proposition,
                    "pricing": {**pricing, "offer_price": round(floor, 2)},
                }
                overridden = True
            propositions.append(proposition)

        if not overridden:
            return envelope
        return envelope.model_copy(
            update={"payload": {**envelope.payload, "propositions": propositions}}
        )
