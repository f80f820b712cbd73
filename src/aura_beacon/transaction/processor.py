import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

import structlog

from aura_beacon.config import TransactionSettings
from aura_beacon.errors import (
    BeaconError,
    PermanentCommitError,
    ProtocolError,
    TransientCommitError,
)
from aura_beacon.hive.dna import Generator
from aura_beacon.hive.types import Envelope, MessageKind, Observation
from aura_beacon.logging_config import bind_correlation_id, clear_correlation_context
from aura_beacon.negotiation.models import Negotiation, NegotiationStatus
from aura_beacon.retry import backoff_delay
from aura_beacon.store import BeaconStore, MemoryStore

from .committers import OrderCommitter
from .models import OrderTerms, Transaction, TransactionStatus

logger = structlog.get_logger(__name__)

SendFn = Callable[[Envelope], Awaitable[None]]


class TransactionProcessor:
    """
    Commits exactly one sale per accepted negotiation.

    The correlation id is the idempotency key: a transaction that already
    reached a terminal status is returned as-is and the order committer is
    never called again for it.
    """

    def __init__(
        self,
        committer: OrderCommitter,
        send: SendFn,
        store: BeaconStore | None = None,
        settings: TransactionSettings | None = None,
        generator: Generator | None = None,
        beacon_id: str = "",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.committer = committer
        self.send = send
        self.store = store or MemoryStore()
        self.settings = settings or TransactionSettings()
        self.generator = generator
        self.beacon_id = beacon_id
        self._sleep = sleep

        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    async def commit(self, negotiation: Negotiation) -> Transaction:
        cid = negotiation.correlation_id
        if negotiation.status != NegotiationStatus.ACCEPTED:
            raise ProtocolError(
                f"Negotiation {cid} is {negotiation.status.value}, not accepted",
                correlation_id=cid,
            )

        async with self._serialized(cid):
            bind_correlation_id(cid)
            try:
                existing = await self.store.get_transaction(cid)
                if existing is not None and existing.is_terminal:
                    logger.info(
                        "transaction_already_processed", status=existing.status.value
                    )
                    if not existing.confirmation_sent:
                        await self._confirm(existing)
                    return existing

                transaction = existing or Transaction(
                    correlation_id=cid, terms=_terms_for(negotiation)
                )
                return await self._process(transaction)
            finally:
                clear_correlation_context()

    async def resume_pending(self) -> list[Transaction]:
        """Finish transactions left pending by a previous process."""
        resumed = []
        for pending in await self.store.pending_transactions():
            cid = pending.correlation_id
            async with self._serialized(cid):
                bind_correlation_id(cid)
                try:
                    current = await self.store.get_transaction(cid)
                    if current is None or current.is_terminal:
                        continue
                    logger.info("transaction_resumed", attempts=current.attempts)
                    resumed.append(await self._process(current))
                finally:
                    clear_correlation_context()
        return resumed

    async def acknowledge(self, correlation_id: str) -> Transaction | None:
        """Record AURA Core's confirmation that the transaction is complete."""
        async with self._serialized(correlation_id):
            transaction = await self.store.get_transaction(correlation_id)
            if transaction is None:
                logger.warning(
                    "acknowledge_unknown_transaction", correlation_id=correlation_id
                )
                return None
            if not transaction.acknowledged:
                transaction.acknowledged = True
                transaction.touch()
                await self.store.save_transaction(transaction)
                logger.info(
                    "transaction_acknowledged",
                    correlation_id=correlation_id,
                    status=transaction.status.value,
                )
            return transaction

    async def lookup(self, correlation_id: str) -> Transaction | None:
        return await self.store.get_transaction(correlation_id)

    async def _process(self, transaction: Transaction) -> Transaction:
        # Persist the pending record before the side effect so a restart resumes it
        await self.store.save_transaction(transaction)
        await self._execute(transaction)
        await self._confirm(transaction)
        await self._notify(transaction)
        return transaction

    async def _execute(self, transaction: Transaction) -> None:
        max_attempts = self.settings.max_retries + 1
        while transaction.status == TransactionStatus.PENDING:
            transaction.attempts += 1
            try:
                result = await self.committer.commit_order(transaction.terms)
            except TransientCommitError as e:
                logger.warning(
                    "commit_transient_failure",
                    attempt=transaction.attempts,
                    error=str(e),
                )
                if transaction.attempts >= max_attempts:
                    transaction.status = TransactionStatus.FAILED
                    transaction.failure_reason = "retries_exhausted"
                    break
                await self.store.save_transaction(transaction)
                await self._sleep(
                    backoff_delay(
                        transaction.attempts,
                        self.settings.backoff_base_seconds,
                        self.settings.backoff_multiplier,
                        self.settings.backoff_cap_seconds,
                    )
                )
            except PermanentCommitError as e:
                logger.error("commit_permanent_failure", error=str(e))
                transaction.status = TransactionStatus.FAILED
                transaction.failure_reason = str(e)
            else:
                transaction.status = TransactionStatus.COMMITTED
                transaction.order_ref = result.order_ref

        transaction.touch()
        await self.store.save_transaction(transaction)
        if transaction.status == TransactionStatus.COMMITTED:
            logger.info(
                "transaction_committed",
                order_ref=transaction.order_ref,
                attempts=transaction.attempts,
                total=transaction.terms.total,
            )
        else:
            logger.error(
                "transaction_failed",
                reason=transaction.failure_reason,
                attempts=transaction.attempts,
            )

    async def _confirm(self, transaction: Transaction) -> None:
        """Send the single CONFIRMATION for a terminal transaction."""
        if transaction.confirmation_sent:
            return

        terms = transaction.terms
        payload: dict[str, Any] = {
            "status": transaction.status.value,
            "proposition_id": terms.proposition_id,
            "terms": {
                "item_id": terms.item_id,
                "price": terms.price,
                "quantity": terms.quantity,
                "currency": terms.currency,
                "total": terms.total,
            },
        }
        if transaction.status == TransactionStatus.COMMITTED:
            payload["order_ref"] = transaction.order_ref
        else:
            payload["reason"] = transaction.failure_reason

        envelope = Envelope(
            kind=MessageKind.CONFIRMATION,
            correlation_id=transaction.correlation_id,
            sender=self.beacon_id,
            recipient=terms.counterparty,
            payload=payload,
        )
        try:
            await self.send(envelope)
        except BeaconError as e:
            logger.warning("confirmation_send_failed", error=str(e), code=e.code)
            return

        transaction.confirmation_sent = True
        transaction.touch()
        await self.store.save_transaction(transaction)

    async def _notify(self, transaction: Transaction) -> None:
        if self.generator is None:
            return
        await self.generator.pulse(
            Observation(
                success=transaction.status == TransactionStatus.COMMITTED,
                data=transaction.to_record(),
                event_type=f"transaction_{transaction.status.value}",
                correlation_id=transaction.correlation_id,
            )
        )

    @asynccontextmanager
    async def _serialized(self, correlation_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(correlation_id, asyncio.Lock())
        self._holders[correlation_id] = self._holders.get(correlation_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[correlation_id] -= 1
            if not self._holders[correlation_id]:
                del self._holders[correlation_id]
                del self._locks[correlation_id]


def _terms_for(negotiation: Negotiation) -> OrderTerms:
    proposition = negotiation.active
    if proposition is None or negotiation.agreed_price is None:
        raise ProtocolError(
            f"Negotiation {negotiation.correlation_id} carries no agreed terms",
            correlation_id=negotiation.correlation_id,
        )
    return OrderTerms(
        correlation_id=negotiation.correlation_id,
        proposition_id=proposition.proposition_id,
        item_id=proposition.item_id,
        price=negotiation.agreed_price,
        quantity=proposition.quantity,
        currency=proposition.currency,
        counterparty=negotiation.counterparty,
    )
