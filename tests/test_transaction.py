import asyncio

import pytest

from aura_beacon.errors import (
    NotConnected,
    PermanentCommitError,
    ProtocolError,
    TransientCommitError,
)
from aura_beacon.hive.types import MessageKind
from aura_beacon.negotiation.models import NegotiationStatus
from aura_beacon.store import MemoryStore
from aura_beacon.transaction.committers import InventoryOrderCommitter
from aura_beacon.transaction.models import Transaction, TransactionStatus
from aura_beacon.transaction.processor import TransactionProcessor, _terms_for
from conftest import FakeCommitter


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def processor_factory(outbox, transaction_settings, sleeps):
    async def fake_sleep(delay):
        sleeps.append(delay)

    def build(committer, store=None, settings=None, send=None):
        return TransactionProcessor(
            committer=committer,
            send=send or outbox,
            store=store or MemoryStore(),
            settings=settings or transaction_settings,
            beacon_id="bcn_test",
            sleep=fake_sleep,
        )

    return build


@pytest.mark.asyncio
async def test_commit_is_idempotent(processor_factory, outbox, accepted_negotiation):
    committer = FakeCommitter()
    processor = processor_factory(committer)

    first = await processor.commit(accepted_negotiation)
    second = await processor.commit(accepted_negotiation)

    assert first is second
    assert first.status == TransactionStatus.COMMITTED
    assert first.order_ref == "ORD-1"
    assert len(committer.calls) == 1
    assert len(outbox.of_kind(MessageKind.CONFIRMATION)) == 1


@pytest.mark.asyncio
async def test_concurrent_commits_run_the_side_effect_once(
    processor_factory, outbox, accepted_negotiation
):
    committer = FakeCommitter()
    processor = processor_factory(committer)

    results = await asyncio.gather(
        *(processor.commit(accepted_negotiation) for _ in range(5))
    )

    assert {tx.status for tx in results} == {TransactionStatus.COMMITTED}
    assert len(committer.calls) == 1
    assert len(outbox.of_kind(MessageKind.CONFIRMATION)) == 1


@pytest.mark.asyncio
async def test_transient_failures_then_success(
    processor_factory, outbox, accepted_negotiation, sleeps
):
    committer = FakeCommitter(
        [TransientCommitError("timeout"), TransientCommitError("timeout")]
    )
    processor = processor_factory(committer)

    transaction = await processor.commit(accepted_negotiation)

    assert transaction.status == TransactionStatus.COMMITTED
    assert transaction.attempts == 3
    assert len(committer.calls) == 3
    assert sleeps == [0.2, 0.4]
    [confirmation] = outbox.of_kind(MessageKind.CONFIRMATION)
    assert confirmation.payload["status"] == "committed"
    assert confirmation.payload["order_ref"] == "ORD-3"
    assert confirmation.payload["terms"]["price"] == 90.0
    assert confirmation.recipient == "scout-1"


@pytest.mark.asyncio
async def test_permanent_failure_sends_decline_notice(
    processor_factory, outbox, accepted_negotiation
):
    committer = FakeCommitter([PermanentCommitError("inventory gone")])
    processor = processor_factory(committer)

    transaction = await processor.commit(accepted_negotiation)
    again = await processor.commit(accepted_negotiation)

    assert transaction.status == TransactionStatus.FAILED
    assert transaction.failure_reason == "inventory gone"
    assert again is transaction
    assert len(committer.calls) == 1
    [notice] = outbox.of_kind(MessageKind.CONFIRMATION)
    assert notice.payload["status"] == "failed"
    assert notice.payload["reason"] == "inventory gone"


@pytest.mark.asyncio
async def test_retries_exhausted_marks_failed(
    processor_factory, transaction_settings, accepted_negotiation, sleeps
):
    settings = transaction_settings.model_copy(update={"max_retries": 2})
    committer = FakeCommitter([TransientCommitError("down")] * 5)
    processor = processor_factory(committer, settings=settings)

    transaction = await processor.commit(accepted_negotiation)

    assert transaction.status == TransactionStatus.FAILED
    assert transaction.failure_reason == "retries_exhausted"
    assert transaction.attempts == 3
    assert len(sleeps) == 2


@pytest.mark.asyncio
async def test_commit_requires_accepted_negotiation(processor_factory, accepted_negotiation):
    accepted_negotiation.status = NegotiationStatus.COUNTERED
    committer = FakeCommitter()
    processor = processor_factory(committer)

    with pytest.raises(ProtocolError):
        await processor.commit(accepted_negotiation)
    assert committer.calls == []


@pytest.mark.asyncio
async def test_unsent_confirmation_is_sent_on_redelivery(
    processor_factory, accepted_negotiation
):
    delivered = []
    failures = [NotConnected("queue full")]

    async def flaky_send(envelope):
        if failures:
            raise failures.pop()
        delivered.append(envelope)

    committer = FakeCommitter()
    processor = processor_factory(committer, send=flaky_send)

    transaction = await processor.commit(accepted_negotiation)
    assert transaction.status == TransactionStatus.COMMITTED
    assert not transaction.confirmation_sent

    await processor.commit(accepted_negotiation)
    await processor.commit(accepted_negotiation)

    assert transaction.confirmation_sent
    assert len(delivered) == 1
    assert len(committer.calls) == 1


@pytest.mark.asyncio
async def test_resume_pending_transaction(processor_factory, outbox, accepted_negotiation):
    store = MemoryStore()
    committer = FakeCommitter()
    pending = Transaction(
        correlation_id=accepted_negotiation.correlation_id,
        terms=_terms_for(accepted_negotiation),
        attempts=1,
    )
    await store.save_transaction(pending)

    resumed = await processor_factory(committer, store=store).resume_pending()

    assert [tx.correlation_id for tx in resumed] == [accepted_negotiation.correlation_id]
    assert resumed[0].status == TransactionStatus.COMMITTED
    assert len(outbox.of_kind(MessageKind.CONFIRMATION)) == 1


@pytest.mark.asyncio
async def test_acknowledge(processor_factory, accepted_negotiation):
    processor = processor_factory(FakeCommitter())
    await processor.commit(accepted_negotiation)

    transaction = await processor.acknowledge(accepted_negotiation.correlation_id)

    assert transaction.acknowledged
    assert await processor.acknowledge("unknown") is None


@pytest.mark.asyncio
async def test_inventory_committer_reserves_stock(
    processor_factory, inventory, headphones, negotiation_factory
):
    processor = processor_factory(InventoryOrderCommitter(inventory))

    transaction = await processor.commit(negotiation_factory(quantity=4))

    assert transaction.status == TransactionStatus.COMMITTED
    assert transaction.order_ref.startswith("ORD-")
    assert headphones.stock == 6


@pytest.mark.asyncio
async def test_inventory_committer_fails_permanently_when_stock_is_gone(
    processor_factory, inventory, negotiation_factory
):
    processor = processor_factory(InventoryOrderCommitter(inventory))

    transaction = await processor.commit(negotiation_factory(quantity=50))

    assert transaction.status == TransactionStatus.FAILED
    assert "Insufficient stock" in transaction.failure_reason
