import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class NegotiationStatus(str, Enum):
    RECEIVED = "received"
    PROPOSED = "proposed"
    COUNTERED = "countered"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


class PropositionStatus(str, Enum):
    OFFERED = "offered"
    COUNTERED = "countered"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


class DeclineReason(str, Enum):
    NO_INVENTORY = "no_inventory"
    INVALID_TERMS = "invalid_terms"
    SESSION_CLOSED = "session_closed"
    COUNTERPARTY_DECLINED = "counterparty_declined"
    NO_AGREEMENT = "no_agreement"
    UNPRICEABLE = "unpriceable"


TERMINAL_STATUSES = frozenset(
    {NegotiationStatus.ACCEPTED, NegotiationStatus.DECLINED, NegotiationStatus.EXPIRED}
)

NEGOTIATION_TRANSITIONS: dict[NegotiationStatus, frozenset[NegotiationStatus]] = {
    NegotiationStatus.RECEIVED: frozenset(
        {NegotiationStatus.PROPOSED, NegotiationStatus.DECLINED, NegotiationStatus.EXPIRED}
    ),
    NegotiationStatus.PROPOSED: frozenset(
        {
            NegotiationStatus.COUNTERED,
            NegotiationStatus.ACCEPTED,
            NegotiationStatus.DECLINED,
            NegotiationStatus.EXPIRED,
        }
    ),
    NegotiationStatus.COUNTERED: frozenset(
        {
            NegotiationStatus.COUNTERED,
            NegotiationStatus.ACCEPTED,
            NegotiationStatus.DECLINED,
            NegotiationStatus.EXPIRED,
        }
    ),
    NegotiationStatus.ACCEPTED: frozenset(),
    NegotiationStatus.DECLINED: frozenset(),
    NegotiationStatus.EXPIRED: frozenset(),
}

PROPOSITION_TRANSITIONS: dict[PropositionStatus, frozenset[PropositionStatus]] = {
    PropositionStatus.OFFERED: frozenset(
        {
            PropositionStatus.COUNTERED,
            PropositionStatus.ACCEPTED,
            PropositionStatus.DECLINED,
            PropositionStatus.EXPIRED,
        }
    ),
    PropositionStatus.COUNTERED: frozenset(
        {
            PropositionStatus.OFFERED,
            PropositionStatus.COUNTERED,
            PropositionStatus.ACCEPTED,
            PropositionStatus.DECLINED,
            PropositionStatus.EXPIRED,
        }
    ),
    PropositionStatus.ACCEPTED: frozenset(),
    PropositionStatus.DECLINED: frozenset(),
    PropositionStatus.EXPIRED: frozenset(),
}


class IllegalTransition(RuntimeError):
    """A transition outside the allowed table was attempted."""


@dataclass(frozen=True)
class Intent:
    """Search criteria extracted from an inquiry."""

    raw: str = ""
    category: str | None = None
    max_price: float | None = None
    budget_max: float | None = None
    features: tuple[str, ...] = ()
    quantity: int = 1
    currency: str = "USD"


@dataclass(frozen=True)
class Inquiry:
    counterparty: str
    intent: Intent
    correlation_id: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class Proposition:
    correlation_id: str
    item_id: str
    item_name: str
    price: float
    list_price: float
    floor_price: float
    quantity: int
    expires_at: datetime
    currency: str = "USD"
    status: PropositionStatus = PropositionStatus.OFFERED
    proposition_id: str = field(default_factory=lambda: f"ofr_{uuid.uuid4().hex[:20]}")
    rationale: str = ""

    def transition(self, status: PropositionStatus) -> None:
        if status not in PROPOSITION_TRANSITIONS[self.status]:
            raise IllegalTransition(
                f"Proposition {self.proposition_id}: {self.status.value} -> {status.value}"
            )
        self.status = status

    def to_payload(self) -> dict[str, Any]:
        return {
            "proposition_id": self.proposition_id,
            "item_id": self.item_id,
            "item_name": self.item_name,
            "status": self.status.value,
            "pricing": {
                "currency": self.currency,
                "list_price": self.list_price,
                "offer_price": self.price,
                "price_rationale": self.rationale,
            },
            "quantity": self.quantity,
            "valid_until": self.expires_at.isoformat(),
        }


@dataclass
class TermsRecord:
    """One step in a proposition's lineage."""

    party: str  # "beacon" or "counterparty"
    price: float
    at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class Negotiation:
    """Mutable aggregate owning the authoritative terms for one correlation id."""

    correlation_id: str
    counterparty: str
    session_id: str
    intent: Intent
    status: NegotiationStatus = NegotiationStatus.RECEIVED
    propositions: list[Proposition] = field(default_factory=list)
    active_proposition_id: str | None = None
    history: list[TermsRecord] = field(default_factory=list)
    rounds: int = 0
    reason: DeclineReason | None = None
    agreed_price: float | None = None
    handed_off: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def active(self) -> Proposition | None:
        """The proposition currently being negotiated.

        Before a counterparty picks one, this is the best ranked candidate.
        """
        if self.active_proposition_id:
            return self.find(self.active_proposition_id)
        return self.propositions[0] if self.propositions else None

    @property
    def expires_at(self) -> datetime | None:
        open_props = [
            p
            for p in self.propositions
            if p.status in (PropositionStatus.OFFERED, PropositionStatus.COUNTERED)
        ]
        if self.active_proposition_id:
            open_props = [p for p in open_props if p.proposition_id == self.active_proposition_id]
        if not open_props:
            return None
        return max(p.expires_at for p in open_props)

    def find(self, proposition_id: str) -> Proposition | None:
        for proposition in self.propositions:
            if proposition.proposition_id == proposition_id:
                return proposition
        return None

    def transition(
        self, status: NegotiationStatus, reason: DeclineReason | None = None
    ) -> None:
        if status not in NEGOTIATION_TRANSITIONS[self.status]:
            raise IllegalTransition(
                f"Negotiation {self.correlation_id}: {self.status.value} -> {status.value}"
            )
        self.status = status
        self.reason = reason
        self.updated_at = datetime.now(UTC)

    def to_record(self) -> dict[str, Any]:
        """Serializable snapshot used by the archive."""
        active = self.active
        return {
            "correlation_id": self.correlation_id,
            "counterparty": self.counterparty,
            "session_id": self.session_id,
            "status": self.status.value,
            "reason": self.reason.value if self.reason else None,
            "agreed_price": self.agreed_price,
            "rounds": self.rounds,
            "handed_off": self.handed_off,
            "active_proposition": active.to_payload() if active else None,
            "history": [
                {"party": h.party, "price": h.price, "at": h.at.isoformat()}
                for h in self.history
            ],
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Negotiation":
        """Rebuild an archived negotiation (active proposition only)."""
        negotiation = cls(
            correlation_id=record["correlation_id"],
            counterparty=record.get("counterparty", ""),
            session_id=record.get("session_id", ""),
            intent=Intent(),
            status=NegotiationStatus(record["status"]),
            rounds=record.get("rounds", 0),
            reason=DeclineReason(record["reason"]) if record.get("reason") else None,
            agreed_price=record.get("agreed_price"),
            handed_off=record.get("handed_off", False),
        )
        payload = record.get("active_proposition")
        if payload:
            pricing = payload.get("pricing", {})
            proposition = Proposition(
                correlation_id=negotiation.correlation_id,
                item_id=payload["item_id"],
                item_name=payload.get("item_name", ""),
                price=pricing.get("offer_price", 0.0),
                list_price=pricing.get("list_price", 0.0),
                floor_price=pricing.get("offer_price", 0.0),
                quantity=payload.get("quantity", 1),
                expires_at=datetime.fromisoformat(payload["valid_until"]),
                currency=pricing.get("currency", "USD"),
                status=PropositionStatus(payload["status"]),
                proposition_id=payload["proposition_id"],
            )
            negotiation.propositions.append(proposition)
            negotiation.active_proposition_id = proposition.proposition_id
        return negotiation
