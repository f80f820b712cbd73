"""
Negotiation state machine.

Every negotiation lives in an arena keyed by correlation id. Each entry has
its own lock, so transitions for one correlation id are serialized while
different correlation ids never wait on each other. Terminal negotiations
leave the live table and are archived.
"""

import asyncio
import math
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from itertools import islice
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError

from aura_beacon.config import NegotiationSettings
from aura_beacon.errors import (
    BeaconError,
    InvalidTerms,
    ProtocolError,
    Unpriceable,
)
from aura_beacon.hive.dna import Generator
from aura_beacon.hive.types import Envelope, MessageKind, Observation
from aura_beacon.inventory import InventorySearch
from aura_beacon.logging_config import bind_correlation_id, clear_correlation_context
from aura_beacon.pricing import PriceRequest, PricingPolicy
from aura_beacon.store import BeaconStore

from .models import (
    DeclineReason,
    Inquiry,
    Negotiation,
    NegotiationStatus,
    Proposition,
    PropositionStatus,
    TermsRecord,
)

logger = structlog.get_logger(__name__)

SendFn = Callable[[Envelope], Awaitable[None]]

OPEN_PROPOSITION_STATUSES = (PropositionStatus.OFFERED, PropositionStatus.COUNTERED)
PRICE_TOLERANCE = 0.005


@dataclass
class _Entry:
    negotiation: Negotiation
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    timer: asyncio.Task | None = None


class NegotiationStateMachine:
    def __init__(
        self,
        inventory: InventorySearch,
        pricing: PricingPolicy,
        send: SendFn,
        settings: NegotiationSettings | None = None,
        store: BeaconStore | None = None,
        generator: Generator | None = None,
        beacon_id: str = "",
    ):
        self.inventory = inventory
        self.pricing = pricing
        self.send = send
        self.settings = settings or NegotiationSettings()
        self.store = store
        self.generator = generator
        self.beacon_id = beacon_id

        self._live: dict[str, _Entry] = {}
        self._archive: OrderedDict[str, Negotiation] = OrderedDict()

    # ------------------------------------------------------------------ queries

    @property
    def live_count(self) -> int:
        return len(self._live)

    def open_negotiations(self, session_id: str | None = None) -> list[Negotiation]:
        return [
            entry.negotiation
            for entry in self._live.values()
            if session_id is None or entry.negotiation.session_id == session_id
        ]

    async def lookup(self, correlation_id: str) -> Negotiation | None:
        entry = self._live.get(correlation_id)
        if entry:
            return entry.negotiation
        return await self._archived(correlation_id)

    # -------------------------------------------------------------- operations

    async def receive_inquiry(self, inquiry: Inquiry, session_id: str) -> Negotiation:
        """
        Open a negotiation for an inquiry and answer it.

        Received -> Proposed when at least one match can be priced,
        Received -> Declined(no_inventory | unpriceable) otherwise.
        """
        cid = inquiry.correlation_id
        if await self._archived(cid) is not None or cid in self._live:
            raise ProtocolError(f"Duplicate correlation id {cid}", correlation_id=cid)

        negotiation = Negotiation(
            correlation_id=cid,
            counterparty=inquiry.counterparty,
            session_id=session_id,
            intent=inquiry.intent,
        )
        entry = _Entry(negotiation=negotiation)
        self._live[cid] = entry

        async with entry.lock:
            bind_correlation_id(cid)
            try:
                logger.info(
                    "negotiation_received",
                    counterparty=inquiry.counterparty,
                    category=inquiry.intent.category,
                    session_id=session_id,
                )
                await self._propose(entry, inquiry)
            except Exception:
                # No live entry without an expiry timer
                if not negotiation.is_terminal:
                    self._discard(entry)
                raise
            finally:
                clear_correlation_context()
        return negotiation

    async def negotiate(
        self,
        correlation_id: str,
        action: str,
        price: float | None = None,
        proposition_id: str | None = None,
        currency: str | None = None,
        scope: str | None = None,
    ) -> Negotiation:
        """
        Apply one counterparty negotiation message.

        Unknown correlation ids raise InvalidTerms. Messages for an already
        terminal negotiation are ignored and the archived record is returned.
        """
        entry = self._live.get(correlation_id)
        if entry is None:
            archived = await self._archived(correlation_id)
            if archived is None:
                raise InvalidTerms(
                    f"Unknown correlation id {correlation_id}",
                    correlation_id=correlation_id,
                )
            logger.info(
                "negotiation_already_terminal",
                correlation_id=correlation_id,
                status=archived.status.value,
                action=action,
            )
            return archived

        cascade_session: str | None = None
        async with entry.lock:
            negotiation = entry.negotiation
            bind_correlation_id(correlation_id)
            try:
                if negotiation.is_terminal:
                    logger.info(
                        "negotiation_already_terminal",
                        status=negotiation.status.value,
                        action=action,
                    )
                    return negotiation

                deadline = negotiation.expires_at
                if deadline is not None and datetime.now(UTC) >= deadline:
                    logger.info("negotiation_deadline_passed", action=action)
                    await self._expire(entry)
                    return negotiation

                try:
                    if action == "accept":
                        await self._accept(entry, price, proposition_id)
                    elif action == "counter":
                        await self._counter(entry, price, proposition_id, currency)
                    elif action == "decline":
                        if scope == "session":
                            await self._decline(entry, DeclineReason.SESSION_CLOSED)
                            cascade_session = negotiation.session_id
                        else:
                            await self._decline(
                                entry, DeclineReason.COUNTERPARTY_DECLINED
                            )
                    else:
                        raise InvalidTerms(f"Unsupported action {action!r}")
                except InvalidTerms as e:
                    logger.warning("negotiation_invalid_terms", error=str(e))
                    await self._decline(entry, DeclineReason.INVALID_TERMS)
                except Unpriceable as e:
                    logger.warning("negotiation_unpriceable", error=str(e))
                    await self._decline(entry, DeclineReason.UNPRICEABLE)
            finally:
                clear_correlation_context()

        if cascade_session:
            await self.cancel_session(cascade_session, notify=True)
        return negotiation

    async def expire(self, correlation_id: str) -> Negotiation | None:
        """Expire a negotiation whose deadline has passed. No-op otherwise."""
        entry = self._live.get(correlation_id)
        if entry is None:
            return None

        async with entry.lock:
            negotiation = entry.negotiation
            if negotiation.is_terminal:
                return negotiation
            deadline = negotiation.expires_at
            if deadline is not None and datetime.now(UTC) < deadline:
                self._schedule_expiry(entry)
                return negotiation

            bind_correlation_id(correlation_id)
            try:
                await self._expire(entry)
            finally:
                clear_correlation_context()
        return negotiation

    async def reject(self, correlation_id: str) -> Negotiation | None:
        """
        Decline a live negotiation with reason invalid_terms, without notice.

        Used when a message for the negotiation is rejected before it reaches
        the state machine; the caller sends the single decline reply. Returns
        None when the correlation id has no live negotiation.
        """
        entry = self._live.get(correlation_id)
        if entry is None:
            return None

        async with entry.lock:
            negotiation = entry.negotiation
            if negotiation.is_terminal:
                return None
            bind_correlation_id(correlation_id)
            try:
                await self._decline(entry, DeclineReason.INVALID_TERMS, notify=False)
            finally:
                clear_correlation_context()
        return negotiation

    async def cancel_session(
        self, session_id: str, notify: bool = False
    ) -> list[Negotiation]:
        """Decline every open negotiation of a session with reason session_closed."""
        cancelled = []
        entries = [
            entry
            for entry in list(self._live.values())
            if entry.negotiation.session_id == session_id
        ]
        for entry in entries:
            async with entry.lock:
                if entry.negotiation.is_terminal:
                    continue
                bind_correlation_id(entry.negotiation.correlation_id)
                try:
                    await self._decline(
                        entry, DeclineReason.SESSION_CLOSED, notify=notify
                    )
                finally:
                    clear_correlation_context()
                cancelled.append(entry.negotiation)

        if cancelled:
            logger.info(
                "session_negotiations_cancelled",
                session_id=session_id,
                count=len(cancelled),
            )
        return cancelled

    async def handoff(self, correlation_id: str) -> Negotiation | None:
        """
        Release an accepted negotiation to the transaction processor.

        Returns the negotiation the first time only; every later call, and
        any call for a negotiation that is not accepted, returns None.
        """
        negotiation = await self.lookup(correlation_id)
        if negotiation is None or negotiation.status != NegotiationStatus.ACCEPTED:
            logger.info(
                "handoff_not_eligible",
                correlation_id=correlation_id,
                status=negotiation.status.value if negotiation else None,
            )
            return None
        if negotiation.handed_off:
            logger.info("handoff_already_handled", correlation_id=correlation_id)
            return None

        negotiation.handed_off = True
        await self._persist(negotiation)
        logger.info("negotiation_handed_off", correlation_id=correlation_id)
        return negotiation

    async def shutdown(self) -> None:
        """Cancel all pending expiry timers."""
        timers = [e.timer for e in self._live.values() if e.timer and not e.timer.done()]
        for timer in timers:
            timer.cancel()
        await asyncio.gather(*timers, return_exceptions=True)

    # ------------------------------------------------------------- transitions

    async def _propose(self, entry: _Entry, inquiry: Inquiry) -> None:
        negotiation = entry.negotiation
        intent = inquiry.intent
        matches = list(islice(self.inventory.search(intent), self.settings.max_propositions))

        if not matches:
            logger.info("negotiation_no_inventory")
            await self._decline(entry, DeclineReason.NO_INVENTORY)
            return

        expires_at = datetime.now(UTC) + timedelta(seconds=self.settings.offer_ttl_seconds)
        for match in matches:
            item = match.item
            request = PriceRequest(
                item_id=item.item_id,
                list_price=item.list_price,
                floor_price=item.floor_price,
                stock=item.stock,
                quantity=intent.quantity,
                budget=intent.budget_max or intent.max_price,
            )
            try:
                price = self.pricing.price_for(request)
            except Unpriceable as e:
                logger.warning("proposition_unpriceable", item_id=item.item_id, error=str(e))
                continue
            if price < item.floor_price:
                logger.warning(
                    "proposition_price_clamped",
                    item_id=item.item_id,
                    price=price,
                    floor_price=item.floor_price,
                )
                price = item.floor_price

            negotiation.propositions.append(
                Proposition(
                    correlation_id=negotiation.correlation_id,
                    item_id=item.item_id,
                    item_name=item.name,
                    price=price,
                    list_price=item.list_price,
                    floor_price=item.floor_price,
                    quantity=intent.quantity,
                    expires_at=expires_at,
                    currency=intent.currency,
                    rationale=_rationale(price, item.list_price),
                )
            )

        if not negotiation.propositions:
            await self._decline(entry, DeclineReason.UNPRICEABLE)
            return

        negotiation.history.append(TermsRecord("beacon", negotiation.propositions[0].price))
        negotiation.transition(NegotiationStatus.PROPOSED)
        logger.info(
            "negotiation_proposed",
            propositions=len(negotiation.propositions),
            best_price=negotiation.propositions[0].price,
        )
        await self._send_propositions(negotiation, negotiation.propositions)
        self._schedule_expiry(entry)
        await self._notify(negotiation, "negotiation_proposed")

    async def _accept(
        self, entry: _Entry, price: float | None, proposition_id: str | None
    ) -> None:
        negotiation = entry.negotiation
        proposition = self._select(negotiation, proposition_id)
        if price is not None and not math.isfinite(price):
            raise InvalidTerms(f"Accepted price {price} is not a finite number")
        if price is not None and abs(price - proposition.price) > PRICE_TOLERANCE:
            raise InvalidTerms(
                f"Accepted price {price} does not match the offer {proposition.price}"
            )
        await self._agree(entry, proposition, proposition.price)

    async def _counter(
        self,
        entry: _Entry,
        price: float | None,
        proposition_id: str | None,
        currency: str | None,
    ) -> None:
        negotiation = entry.negotiation
        proposition = self._select(negotiation, proposition_id)

        if price is None or not math.isfinite(price) or price <= 0:
            raise InvalidTerms("Counter-offer must carry a positive finite price")
        if currency and currency != proposition.currency:
            raise InvalidTerms(
                f"Counter-offer currency {currency} does not match {proposition.currency}"
            )
        if price < proposition.price * self.settings.min_counter_ratio:
            raise InvalidTerms(
                f"Counter-offer {price} is below {self.settings.min_counter_ratio:.0%} "
                f"of the offer {proposition.price}"
            )

        negotiation.rounds += 1
        negotiation.history.append(TermsRecord("counterparty", price))
        proposition.transition(PropositionStatus.COUNTERED)

        ask = self.pricing.price_for(
            PriceRequest(
                item_id=proposition.item_id,
                list_price=proposition.list_price,
                floor_price=proposition.floor_price,
                quantity=proposition.quantity,
                budget=negotiation.intent.budget_max or negotiation.intent.max_price,
                current_offer=proposition.price,
                counter=price,
                round=negotiation.rounds,
            )
        )
        ask = max(ask, proposition.floor_price)

        if price >= ask:
            await self._agree(entry, proposition, price)
            return

        if negotiation.rounds >= self.settings.max_counter_rounds:
            logger.info("negotiation_rounds_exhausted", rounds=negotiation.rounds)
            await self._decline(entry, DeclineReason.NO_AGREEMENT)
            return

        proposition.price = ask
        proposition.expires_at = datetime.now(UTC) + timedelta(
            seconds=self.settings.offer_ttl_seconds
        )
        proposition.transition(PropositionStatus.OFFERED)
        negotiation.history.append(TermsRecord("beacon", ask))
        negotiation.transition(NegotiationStatus.COUNTERED)
        logger.info(
            "negotiation_countered",
            counter=price,
            ask=ask,
            round=negotiation.rounds,
        )
        await self._send_propositions(negotiation, [proposition])
        self._schedule_expiry(entry)

    async def _agree(self, entry: _Entry, proposition: Proposition, price: float) -> None:
        negotiation = entry.negotiation
        proposition.price = price
        proposition.transition(PropositionStatus.ACCEPTED)
        negotiation.agreed_price = price
        negotiation.transition(NegotiationStatus.ACCEPTED)
        logger.info(
            "negotiation_accepted",
            proposition_id=proposition.proposition_id,
            price=price,
            rounds=negotiation.rounds,
        )
        await self._send_status(negotiation)
        await self._finalize(entry)
        await self._notify(negotiation, "negotiation_accepted")

    async def _decline(
        self, entry: _Entry, reason: DeclineReason, notify: bool = True
    ) -> None:
        negotiation = entry.negotiation
        for proposition in negotiation.propositions:
            if proposition.status in OPEN_PROPOSITION_STATUSES:
                proposition.transition(PropositionStatus.DECLINED)
        negotiation.transition(NegotiationStatus.DECLINED, reason)
        logger.info("negotiation_declined", reason=reason.value)

        if notify:
            await self._send_status(negotiation)
        await self._finalize(entry)
        await self._notify(negotiation, "negotiation_declined")

    async def _expire(self, entry: _Entry) -> None:
        negotiation = entry.negotiation
        for proposition in negotiation.propositions:
            if proposition.status in OPEN_PROPOSITION_STATUSES:
                proposition.transition(PropositionStatus.EXPIRED)
        negotiation.transition(NegotiationStatus.EXPIRED)
        logger.info("negotiation_expired", rounds=negotiation.rounds)
        await self._send_status(negotiation)
        await self._finalize(entry)
        await self._notify(negotiation, "negotiation_expired")

    def _select(self, negotiation: Negotiation, proposition_id: str | None) -> Proposition:
        """Resolve the proposition a message refers to and make it the active one."""
        if negotiation.active_proposition_id:
            proposition = negotiation.active
            if proposition_id and proposition_id != negotiation.active_proposition_id:
                raise InvalidTerms(
                    f"Proposition {proposition_id} is not under negotiation"
                )
        elif proposition_id:
            proposition = negotiation.find(proposition_id)
            if proposition is None:
                raise InvalidTerms(f"Unknown proposition {proposition_id}")
        else:
            proposition = negotiation.active

        if proposition is None or proposition.status not in OPEN_PROPOSITION_STATUSES:
            raise InvalidTerms("No open proposition to negotiate")

        if negotiation.active_proposition_id is None:
            negotiation.active_proposition_id = proposition.proposition_id
            for other in negotiation.propositions:
                if other is not proposition and other.status in OPEN_PROPOSITION_STATUSES:
                    other.transition(PropositionStatus.DECLINED)
        return proposition

    # ---------------------------------------------------------------- plumbing

    def _schedule_expiry(self, entry: _Entry) -> None:
        if entry.timer and not entry.timer.done() and entry.timer is not asyncio.current_task():
            entry.timer.cancel()
        deadline = entry.negotiation.expires_at
        if deadline is None:
            return
        entry.timer = asyncio.create_task(
            self._expire_at(entry.negotiation.correlation_id, deadline),
            name=f"expiry-{entry.negotiation.correlation_id}",
        )

    async def _expire_at(self, correlation_id: str, deadline: datetime) -> None:
        delay = (deadline - datetime.now(UTC)).total_seconds()
        if delay > 0:
            await asyncio.sleep(delay)
        await self.expire(correlation_id)

    def _discard(self, entry: _Entry) -> None:
        timer = entry.timer
        if timer and not timer.done() and timer is not asyncio.current_task():
            timer.cancel()
        entry.timer = None
        self._live.pop(entry.negotiation.correlation_id, None)
        logger.warning("negotiation_discarded", status=entry.negotiation.status.value)

    async def _finalize(self, entry: _Entry) -> None:
        negotiation = entry.negotiation
        timer = entry.timer
        if timer and not timer.done() and timer is not asyncio.current_task():
            timer.cancel()
        entry.timer = None

        self._live.pop(negotiation.correlation_id, None)
        self._archive[negotiation.correlation_id] = negotiation
        self._archive.move_to_end(negotiation.correlation_id)
        while len(self._archive) > self.settings.archive_size:
            self._archive.popitem(last=False)
        await self._persist(negotiation)

    async def _persist(self, negotiation: Negotiation) -> None:
        if self.store is None:
            return
        try:
            await self.store.archive_negotiation(negotiation)
        except SQLAlchemyError as e:
            logger.error(
                "negotiation_archive_failed",
                correlation_id=negotiation.correlation_id,
                error=str(e),
                exc_info=True,
            )

    async def _archived(self, correlation_id: str) -> Negotiation | None:
        negotiation = self._archive.get(correlation_id)
        if negotiation is not None or self.store is None:
            return negotiation
        loaded = await self.store.get_archived_negotiation(correlation_id)
        if loaded is None:
            return None
        return self._archive.setdefault(correlation_id, loaded)

    async def _send_propositions(
        self, negotiation: Negotiation, propositions: list[Proposition]
    ) -> None:
        payload: dict[str, Any] = {
            "status": negotiation.status.value,
            "round": negotiation.rounds,
            "propositions": [p.to_payload() for p in propositions],
        }
        await self._emit(negotiation, MessageKind.PROPOSITION, payload)

    async def _send_status(self, negotiation: Negotiation) -> None:
        payload: dict[str, Any] = {
            "status": negotiation.status.value,
            "reason": negotiation.reason.value if negotiation.reason else None,
        }
        proposition = negotiation.active if negotiation.active_proposition_id else None
        if negotiation.status == NegotiationStatus.ACCEPTED and proposition:
            payload["proposition_id"] = proposition.proposition_id
            payload["terms"] = {
                "item_id": proposition.item_id,
                "price": negotiation.agreed_price,
                "quantity": proposition.quantity,
                "currency": proposition.currency,
            }
        await self._emit(negotiation, MessageKind.NEGOTIATION, payload)

    async def _emit(
        self, negotiation: Negotiation, kind: MessageKind, payload: dict[str, Any]
    ) -> None:
        envelope = Envelope(
            kind=kind,
            correlation_id=negotiation.correlation_id,
            sender=self.beacon_id,
            recipient=negotiation.counterparty,
            payload=payload,
        )
        try:
            await self.send(envelope)
        except BeaconError as e:
            logger.warning(
                "negotiation_send_failed",
                kind=kind.value,
                error=str(e),
                code=e.code,
            )

    async def _notify(self, negotiation: Negotiation, event_type: str) -> None:
        if self.generator is None:
            return
        await self.generator.pulse(
            Observation(
                success=True,
                data=negotiation.to_record(),
                event_type=event_type,
                correlation_id=negotiation.correlation_id,
            )
        )


def _rationale(price: float, list_price: float) -> str:
    if list_price <= 0 or price >= list_price:
        return "Standard pricing"
    return f"{(list_price - price) / list_price:.0%} off list price"
