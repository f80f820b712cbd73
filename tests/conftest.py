"""Pytest configuration and shared fixtures."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from aura_beacon.config import NegotiationSettings, TransactionSettings
from aura_beacon.errors import TransportError
from aura_beacon.hive.types import Envelope, MessageKind
from aura_beacon.inventory import InMemoryInventory, InventoryItem
from aura_beacon.negotiation.models import (
    Intent,
    Negotiation,
    NegotiationStatus,
    Proposition,
    PropositionStatus,
)
from aura_beacon.transaction.models import OrderResult


class FakeTransport:
    """In-memory duplex link driven by the test."""

    def __init__(self):
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.sent: list[str] = []
        self.connects = 0
        self.connect_failures = 0
        self.fail_sends = 0
        self.send_gate: asyncio.Event | None = None
        self.is_open = False

    async def connect(self) -> None:
        self.connects += 1
        if self.connect_failures:
            self.connect_failures -= 1
            raise TransportError("connection refused")
        self.is_open = True

    async def send(self, text: str) -> None:
        if self.send_gate is not None:
            await self.send_gate.wait()
        if not self.is_open:
            raise TransportError("link closed")
        if self.fail_sends:
            self.fail_sends -= 1
            raise TransportError("write failed")
        self.sent.append(text)

    async def recv(self) -> str:
        item = await self.inbound.get()
        if isinstance(item, Exception):
            self.is_open = False
            raise item
        return item

    async def close(self) -> None:
        self.is_open = False

    def feed(self, frame: Envelope | str) -> None:
        self.inbound.put_nowait(frame.to_json() if isinstance(frame, Envelope) else frame)

    def drop_link(self) -> None:
        self.inbound.put_nowait(TransportError("link lost"))

    def envelopes(self, kind: MessageKind | None = None) -> list[Envelope]:
        decoded = [Envelope.from_json(text) for text in self.sent]
        return [e for e in decoded if kind is None or e.kind == kind]


class RecordingSink:
    def __init__(self):
        self.records: list[tuple[str, dict]] = []

    def record(self, event: str, **fields) -> None:
        self.records.append((event, fields))

    def events(self) -> list[str]:
        return [event for event, _ in self.records]


class FakeCommitter:
    """Order committer that replays scripted outcomes; an exception entry is raised."""

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.calls = []

    async def commit_order(self, terms):
        self.calls.append(terms)
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        return outcome or OrderResult(order_ref=f"ORD-{len(self.calls)}")


class RecordingOutbox:
    def __init__(self):
        self.envelopes: list[Envelope] = []

    async def __call__(self, envelope: Envelope) -> None:
        self.envelopes.append(envelope)

    def of_kind(self, kind: MessageKind) -> list[Envelope]:
        return [e for e in self.envelopes if e.kind == kind]


async def _wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def negotiation_settings():
    return NegotiationSettings(
        offer_ttl_seconds=60,
        max_counter_rounds=3,
        min_counter_ratio=0.5,
        concession_rate=0.5,
        min_discount_percent=0,
        max_discount_percent=25,
    )


@pytest.fixture
def transaction_settings():
    return TransactionSettings(
        max_retries=3, backoff_base_seconds=0.2, backoff_multiplier=2.0, backoff_cap_seconds=5.0
    )


@pytest.fixture
def headphones():
    return InventoryItem(
        item_id="prod_headphones",
        name="Studio Headphones",
        category="electronics.headphones",
        list_price=100.0,
        floor_price=85.0,
        stock=10,
        features=["wireless", "noise_cancellation"],
    )


@pytest.fixture
def inventory(headphones):
    return InMemoryInventory([headphones])


@pytest.fixture
def outbox():
    return RecordingOutbox()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def transport():
    return FakeTransport()


def make_accepted_negotiation(
    correlation_id: str = "cid-accepted",
    price: float = 90.0,
    item_id: str = "prod_headphones",
    quantity: int = 1,
) -> Negotiation:
    proposition = Proposition(
        correlation_id=correlation_id,
        item_id=item_id,
        item_name="Studio Headphones",
        price=price,
        list_price=100.0,
        floor_price=85.0,
        quantity=quantity,
        expires_at=datetime.now(UTC) + timedelta(hours=1),
        status=PropositionStatus.ACCEPTED,
    )
    return Negotiation(
        correlation_id=correlation_id,
        counterparty="scout-1",
        session_id="sess-1",
        intent=Intent(category="electronics"),
        status=NegotiationStatus.ACCEPTED,
        propositions=[proposition],
        active_proposition_id=proposition.proposition_id,
        agreed_price=price,
    )


@pytest.fixture
def accepted_negotiation():
    return make_accepted_negotiation()


@pytest.fixture
def negotiation_factory():
    return make_accepted_negotiation
