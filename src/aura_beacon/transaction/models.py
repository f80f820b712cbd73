from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass(frozen=True)
class OrderTerms:
    """Final agreed terms handed to the order committer."""

    correlation_id: str
    proposition_id: str
    item_id: str
    price: float
    quantity: int
    currency: str
    counterparty: str

    @property
    def total(self) -> float:
        return round(self.price * self.quantity, 2)


@dataclass(frozen=True)
class OrderResult:
    order_ref: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Transaction:
    """Sale record for one accepted negotiation; the correlation id is its idempotency key."""

    correlation_id: str
    terms: OrderTerms
    status: TransactionStatus = TransactionStatus.PENDING
    attempts: int = 0
    order_ref: str | None = None
    failure_reason: str | None = None
    confirmation_sent: bool = False
    acknowledged: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_terminal(self) -> bool:
        return self.status in (TransactionStatus.COMMITTED, TransactionStatus.FAILED)

    def touch(self) -> None:
        self.updated_at = datetime.now(UTC)

    def to_record(self) -> dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "terms": {
                "correlation_id": self.terms.correlation_id,
                "proposition_id": self.terms.proposition_id,
                "item_id": self.terms.item_id,
                "price": self.terms.price,
                "quantity": self.terms.quantity,
                "currency": self.terms.currency,
                "counterparty": self.terms.counterparty,
            },
            "status": self.status.value,
            "attempts": self.attempts,
            "order_ref": self.order_ref,
            "failure_reason": self.failure_reason,
            "confirmation_sent": self.confirmation_sent,
            "acknowledged": self.acknowledged,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Transaction":
        return cls(
            correlation_id=record["correlation_id"],
            terms=OrderTerms(**record["terms"]),
            status=TransactionStatus(record["status"]),
            attempts=record.get("attempts", 0),
            order_ref=record.get("order_ref"),
            failure_reason=record.get("failure_reason"),
            confirmation_sent=record.get("confirmation_sent", False),
            acknowledged=record.get("acknowledged", False),
            created_at=datetime.fromisoformat(record["created_at"]),
            updated_at=datetime.fromisoformat(record["updated_at"]),
        )
