import uuid
from typing import Protocol, runtime_checkable

import httpx
import structlog

from aura_beacon.errors import PermanentCommitError, TransientCommitError
from aura_beacon.inventory import InMemoryInventory

from .models import OrderResult, OrderTerms

logger = structlog.get_logger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


@runtime_checkable
class OrderCommitter(Protocol):
    """Performs the sale side effect. Raises TransientCommitError or PermanentCommitError."""

    async def commit_order(self, terms: OrderTerms) -> OrderResult: ...


class InventoryOrderCommitter:
    """Commits an order by reserving stock in the in-memory catalogue."""

    def __init__(self, inventory: InMemoryInventory):
        self.inventory = inventory

    async def commit_order(self, terms: OrderTerms) -> OrderResult:
        item = self.inventory.reserve(terms.item_id, terms.quantity)
        order_ref = f"ORD-{uuid.uuid4().hex[:12].upper()}"
        return OrderResult(
            order_ref=order_ref,
            metadata={"item_name": item.name, "remaining_stock": item.stock},
        )


class HttpOrderCommitter:
    """
    Commits an order against a merchant order API.

    The correlation id is sent as the Idempotency-Key header so that a retried
    request never creates a second order upstream.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = client or httpx.AsyncClient(
            base_url=base_url, timeout=timeout, headers=headers
        )

    async def commit_order(self, terms: OrderTerms) -> OrderResult:
        body = {
            "correlation_id": terms.correlation_id,
            "proposition_id": terms.proposition_id,
            "item_id": terms.item_id,
            "quantity": terms.quantity,
            "unit_price": terms.price,
            "total": terms.total,
            "currency": terms.currency,
            "buyer": terms.counterparty,
        }
        try:
            response = await self.client.post(
                "/orders",
                json=body,
                headers={"Idempotency-Key": terms.correlation_id},
            )
        except httpx.TimeoutException as e:
            raise TransientCommitError(
                f"Order request timed out: {e}", correlation_id=terms.correlation_id
            ) from e
        except httpx.TransportError as e:
            raise TransientCommitError(
                f"Order service unreachable: {e}", correlation_id=terms.correlation_id
            ) from e

        if response.status_code in RETRYABLE_STATUS_CODES:
            raise TransientCommitError(
                f"Order service returned {response.status_code}",
                correlation_id=terms.correlation_id,
            )
        if response.is_error:
            logger.warning(
                "order_rejected",
                correlation_id=terms.correlation_id,
                status_code=response.status_code,
                body=response.text[:200],
            )
            raise PermanentCommitError(
                f"Order rejected with {response.status_code}",
                correlation_id=terms.correlation_id,
            )

        data = response.json()
        order_ref = data.get("order_id") or data.get("order_ref")
        if not order_ref:
            raise PermanentCommitError(
                "Order service response carried no order id",
                correlation_id=terms.correlation_id,
            )
        return OrderResult(order_ref=str(order_ref), metadata=data)

    async def aclose(self) -> None:
        await self.client.aclose()
