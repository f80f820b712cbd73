import uuid
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

import structlog

from aura_beacon.errors import PermanentCommitError
from aura_beacon.negotiation.models import Intent

logger = structlog.get_logger(__name__)

# Headroom over the buyer's max price left for negotiation
PRICE_HEADROOM = 1.1


@dataclass
class InventoryItem:
    name: str
    category: str
    list_price: float
    floor_price: float
    stock: int
    item_id: str = field(default_factory=lambda: f"prod_{uuid.uuid4().hex[:8]}")
    description: str = ""
    features: list[str] = field(default_factory=list)
    brand: str = ""
    model: str = ""


@dataclass(frozen=True)
class Match:
    item: InventoryItem
    score: float


@runtime_checkable
class InventorySearch(Protocol):
    """Inventory search collaborator."""

    def search(self, intent: Intent) -> Iterator[Match]: ...


class InMemoryInventory:
    """Reference catalogue kept in process memory."""

    def __init__(self, items: Iterable[InventoryItem] = ()):
        self._items: dict[str, InventoryItem] = {}
        for item in items:
            self.add(item)

    def add(self, item: InventoryItem) -> InventoryItem:
        self._items[item.item_id] = item
        return item

    def get(self, item_id: str) -> InventoryItem | None:
        return self._items.get(item_id)

    def __len__(self) -> int:
        return len(self._items)

    def search(self, intent: Intent) -> Iterator[Match]:
        """
        Yield items matching the intent, best feature match first.

        Rules:
        1. Out of stock items never match
        2. Category matches on its top-level segment
        3. List price may exceed the buyer's max price by PRICE_HEADROOM
        4. Features only rank, they never exclude
        """
        wanted = set(intent.features)
        category_root = intent.category.split(".")[0] if intent.category else None
        matches: list[Match] = []

        for item in self._items.values():
            if item.stock <= 0 or item.stock < intent.quantity:
                continue
            if category_root and category_root not in item.category:
                continue
            if intent.max_price and item.list_price > intent.max_price * PRICE_HEADROOM:
                continue

            overlap = len(wanted.intersection(item.features))
            matches.append(Match(item=item, score=overlap / max(len(wanted), 1)))

        matches.sort(key=lambda m: m.score, reverse=True)
        logger.debug("inventory_search_completed", match_count=len(matches))
        yield from matches

    def reserve(self, item_id: str, quantity: int) -> InventoryItem:
        item = self._items.get(item_id)
        if item is None:
            raise PermanentCommitError(f"Item {item_id} no longer exists")
        if item.stock < quantity:
            raise PermanentCommitError(
                f"Insufficient stock for {item_id}: {item.stock} < {quantity}"
            )
        item.stock -= quantity
        logger.info(
            "inventory_reserved", item_id=item_id, quantity=quantity, stock=item.stock
        )
        return item


def sample_inventory() -> InMemoryInventory:
    """Demo catalogue used when no merchant catalogue is wired in."""
    return InMemoryInventory(
        [
            InventoryItem(
                name="Sony WH-1000XM5 Wireless Headphones",
                category="electronics.headphones.over_ear",
                list_price=399.99,
                floor_price=320.00,
                stock=50,
                description="Industry-leading noise cancellation, 30-hour battery.",
                features=["noise_cancellation", "wireless", "foldable", "multipoint"],
                brand="Sony",
                model="WH-1000XM5",
            ),
            InventoryItem(
                name="Bose QuietComfort Ultra Headphones",
                category="electronics.headphones.over_ear",
                list_price=429.99,
                floor_price=350.00,
                stock=35,
                description="Immersive audio with world-class noise cancellation.",
                features=["noise_cancellation", "wireless", "spatial_audio"],
                brand="Bose",
                model="QuietComfort Ultra",
            ),
            InventoryItem(
                name="Apple AirPods Max",
                category="electronics.headphones.over_ear",
                list_price=549.99,
                floor_price=470.00,
                stock=20,
                description="High-fidelity audio with custom drivers.",
                features=["noise_cancellation", "wireless", "spatial_audio"],
                brand="Apple",
                model="AirPods Max",
            ),
        ]
    )
