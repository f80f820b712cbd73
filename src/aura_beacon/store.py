import asyncio
from collections import OrderedDict
from typing import Protocol, runtime_checkable

import structlog
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from aura_beacon.db import NegotiationRecord, TransactionRecord
from aura_beacon.negotiation.models import Negotiation
from aura_beacon.transaction.models import Transaction, TransactionStatus

logger = structlog.get_logger(__name__)


@runtime_checkable
class BeaconStore(Protocol):
    """Correlation-id keyed table of archived negotiations and transactions."""

    async def get_transaction(self, correlation_id: str) -> Transaction | None: ...

    async def save_transaction(self, transaction: Transaction) -> None: ...

    async def pending_transactions(self) -> list[Transaction]: ...

    async def archive_negotiation(self, negotiation: Negotiation) -> None: ...

    async def get_archived_negotiation(
        self, correlation_id: str
    ) -> Negotiation | None: ...


class MemoryStore:
    """Process-local store. The negotiation archive keeps the newest entries only."""

    def __init__(self, archive_size: int = 1000):
        self.archive_size = archive_size
        self._archive: OrderedDict[str, Negotiation] = OrderedDict()
        self._transactions: dict[str, Transaction] = {}

    async def get_transaction(self, correlation_id: str) -> Transaction | None:
        return self._transactions.get(correlation_id)

    async def save_transaction(self, transaction: Transaction) -> None:
        self._transactions[transaction.correlation_id] = transaction

    async def pending_transactions(self) -> list[Transaction]:
        return [
            tx
            for tx in self._transactions.values()
            if tx.status == TransactionStatus.PENDING
        ]

    async def archive_negotiation(self, negotiation: Negotiation) -> None:
        self._archive[negotiation.correlation_id] = negotiation
        self._archive.move_to_end(negotiation.correlation_id)
        while len(self._archive) > self.archive_size:
            evicted, _ = self._archive.popitem(last=False)
            logger.debug("negotiation_archive_evicted", correlation_id=evicted)

    async def get_archived_negotiation(self, correlation_id: str) -> Negotiation | None:
        return self._archive.get(correlation_id)


class SqlStore:
    """SQLAlchemy-backed store; blocking calls run in a worker thread."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def get_transaction(self, correlation_id: str) -> Transaction | None:
        def _get() -> Transaction | None:
            with self.session_factory() as session:
                row = session.get(TransactionRecord, correlation_id)
                return Transaction.from_record(row.data) if row else None

        return await asyncio.to_thread(_get)

    async def save_transaction(self, transaction: Transaction) -> None:
        def _save() -> None:
            with self.session_factory() as session:
                row = session.get(TransactionRecord, transaction.correlation_id)
                if row is None:
                    row = TransactionRecord(correlation_id=transaction.correlation_id)
                    session.add(row)
                row.status = transaction.status.value
                row.order_ref = transaction.order_ref
                row.confirmation_sent = transaction.confirmation_sent
                row.data = transaction.to_record()
                session.commit()

        await asyncio.to_thread(_save)

    async def pending_transactions(self) -> list[Transaction]:
        def _pending() -> list[Transaction]:
            with self.session_factory() as session:
                rows = session.scalars(
                    select(TransactionRecord).where(
                        TransactionRecord.status == TransactionStatus.PENDING.value
                    )
                ).all()
                return [Transaction.from_record(row.data) for row in rows]

        return await asyncio.to_thread(_pending)

    async def archive_negotiation(self, negotiation: Negotiation) -> None:
        record = negotiation.to_record()

        def _archive() -> None:
            with self.session_factory() as session:
                row = session.get(NegotiationRecord, negotiation.correlation_id)
                if row is None:
                    row = NegotiationRecord(correlation_id=negotiation.correlation_id)
                    session.add(row)
                row.session_id = negotiation.session_id
                row.status = negotiation.status.value
                row.reason = negotiation.reason.value if negotiation.reason else None
                row.data = record
                session.commit()

        await asyncio.to_thread(_archive)

    async def get_archived_negotiation(self, correlation_id: str) -> Negotiation | None:
        def _get() -> Negotiation | None:
            with self.session_factory() as session:
                row = session.get(NegotiationRecord, correlation_id)
                return Negotiation.from_record(row.data) if row else None

        return await asyncio.to_thread(_get)
