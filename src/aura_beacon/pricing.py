from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import structlog

from aura_beacon.config import NegotiationSettings
from aura_beacon.errors import Unpriceable

logger = structlog.get_logger(__name__)

CLEARANCE_DISCOUNT_PERCENT = 15.0
BUDGET_FIT_MARGIN_PERCENT = 2.0


@dataclass(frozen=True)
class PriceRequest:
    """Everything the pricing policy may look at for one round.

    An opening request has no ``counter``; a counter round carries the
    counterparty's price and the offer it answers.
    """

    item_id: str
    list_price: float
    floor_price: float
    stock: int = 0
    quantity: int = 1
    budget: float | None = None
    current_offer: float | None = None
    counter: float | None = None
    round: int = 0


@dataclass(frozen=True)
class Quote:
    price: float
    discount_percent: float
    rationale: str


@runtime_checkable
class PricingPolicy(Protocol):
    """Pricing collaborator. Raises Unpriceable when it cannot price a request."""

    def price_for(self, request: PriceRequest) -> float: ...


class RuleBasedPricing:
    """Deterministic pricing policy.

    Opening offer:
    1. Start from the minimum discount
    2. Stock above the clearance threshold gets a clearance discount
    3. An over-budget item is discounted to fit the budget if that stays
       within the maximum discount
    4. Never above the maximum discount, never below the floor price

    Counter round:
    1. A counter at or above the floor is acceptable as-is
    2. Otherwise concede part of the gap toward the counter, stopping at the floor
    """

    def __init__(self, settings: NegotiationSettings | None = None):
        self.settings = settings or NegotiationSettings()

    def quote(self, request: PriceRequest) -> Quote:
        if request.list_price <= 0:
            raise Unpriceable(f"Item {request.item_id} has no list price")

        discount = self.settings.min_discount_percent
        rationale = "Standard pricing"

        if request.stock > self.settings.clearance_stock_threshold:
            discount = max(discount, CLEARANCE_DISCOUNT_PERCENT)
            rationale = "Inventory clearance offer"

        if request.budget and request.list_price > request.budget:
            needed = (request.list_price - request.budget) / request.list_price * 100
            if needed <= self.settings.max_discount_percent:
                discount = max(discount, needed + BUDGET_FIT_MARGIN_PERCENT)
                rationale = "Special price to fit your budget"

        discount = min(discount, self.settings.max_discount_percent)
        price = round(request.list_price * (1 - discount / 100), 2)
        if price < request.floor_price:
            price = request.floor_price
            discount = (request.list_price - price) / request.list_price * 100

        return Quote(price=price, discount_percent=round(discount, 2), rationale=rationale)

    def price_for(self, request: PriceRequest) -> float:
        if request.counter is None:
            return self.quote(request).price

        if request.list_price <= 0 or request.current_offer is None:
            raise Unpriceable(f"Item {request.item_id} cannot be repriced")

        if request.counter >= request.floor_price:
            logger.debug(
                "pricing_counter_acceptable",
                item_id=request.item_id,
                counter=request.counter,
                floor_price=request.floor_price,
            )
            return request.counter

        gap = request.current_offer - request.counter
        ask = round(request.current_offer - gap * self.settings.concession_rate, 2)
        ask = max(ask, request.floor_price)
        logger.debug(
            "pricing_counter_conceded",
            item_id=request.item_id,
            counter=request.counter,
            ask=ask,
            round=request.round,
        )
        return ask
