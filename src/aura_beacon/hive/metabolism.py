import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Any

import structlog
from opentelemetry import trace

from aura_beacon.errors import BeaconError, InvalidTerms, NegotiationError, ProtocolError
from aura_beacon.negotiation.machine import NegotiationStateMachine
from aura_beacon.negotiation.models import (
    DeclineReason,
    Inquiry,
    Intent,
    NegotiationStatus,
)
from aura_beacon.transaction.models import TransactionStatus
from aura_beacon.transaction.processor import TransactionProcessor

from .connector import SessionConnector
from .dna import Membrane
from .membrane import (
    InquiryPayload,
    NegotiationPayload,
    TransactionPayload,
)
from .types import Envelope, MessageKind, Observation

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)

PRICE_TOLERANCE = 0.005
CLOSED_SESSION_HISTORY = 64


class Outbox:
    """Outbound path: Membrane(Out) -> Connector."""

    def __init__(self, connector: SessionConnector, membrane: Membrane):
        self.connector = connector
        self.membrane = membrane

    async def __call__(self, envelope: Envelope) -> None:
        with tracer.start_as_current_span("nucleotide_membrane_out") as span:
            safe = await self.membrane.inspect_outbound(envelope)
            span.set_attribute("kind", safe.kind.value)
            span.set_attribute("overridden", safe is not envelope)
        await self.connector.send(safe)


@dataclass
class _Lane:
    pending: deque[tuple[Envelope, str]] = field(default_factory=deque)
    worker: asyncio.Task | None = None


class BeaconMetabolism:
    """
    Dispatches inbound envelopes:
    Envelope -> Membrane(In) -> State machine / Processor -> Outbox

    Envelopes that share a correlation id run one at a time in arrival
    order on their own lane; different correlation ids run concurrently.
    """

    def __init__(
        self,
        machine: NegotiationStateMachine,
        processor: TransactionProcessor,
        membrane: Membrane,
        outbox: Outbox,
        profile: dict[str, Any] | None = None,
        beacon_id: str = "",
    ):
        self.machine = machine
        self.processor = processor
        self.membrane = membrane
        self.outbox = outbox
        self.profile = profile or {}
        self.beacon_id = beacon_id

        self._lanes: dict[str, _Lane] = {}
        self._closed_sessions: deque[str] = deque(maxlen=CLOSED_SESSION_HISTORY)

    def attach(self, connector: SessionConnector) -> None:
        connector.on_message(self.handle)
        connector.on_connect(self.session_opened)
        connector.on_disconnect(self.session_closed)

    @property
    def busy_lanes(self) -> int:
        return len(self._lanes)

    async def handle(self, envelope: Envelope, session_id: str) -> None:
        """Connector callback. Queues the envelope on its lane without waiting for it."""
        cid = envelope.correlation_id
        if cid is None:
            await self.execute(envelope, session_id)
            return

        lane = self._lanes.get(cid)
        if lane is None:
            lane = self._lanes[cid] = _Lane()
        lane.pending.append((envelope, session_id))
        if lane.worker is None:
            lane.worker = asyncio.create_task(self._drain(cid, lane), name=f"lane-{cid}")

    async def drain(self) -> None:
        """Wait until every lane is idle."""
        while self._lanes:
            workers = [lane.worker for lane in self._lanes.values() if lane.worker]
            await asyncio.gather(*workers, return_exceptions=True)

    async def session_opened(self, session_id: str) -> None:
        await self.outbox(
            Envelope(
                kind=MessageKind.BEACON_REGISTER,
                sender=self.beacon_id,
                payload={"beacon_id": self.beacon_id, "session_id": session_id, **self.profile},
            )
        )
        logger.info("beacon_announced", session_id=session_id)

    async def session_closed(self, session_id: str) -> None:
        if session_id not in self._closed_sessions:
            self._closed_sessions.append(session_id)
        await self.machine.cancel_session(session_id)

    async def _drain(self, cid: str, lane: _Lane) -> None:
        while lane.pending:
            envelope, session_id = lane.pending.popleft()
            await self.execute(envelope, session_id)
        self._lanes.pop(cid, None)

    async def execute(self, envelope: Envelope, session_id: str) -> Observation | None:
        """Execute one full cycle for an inbound envelope."""
        with tracer.start_as_current_span("beacon_metabolism") as span:
            span.set_attribute("kind", envelope.kind.value)
            span.set_attribute("session_id", session_id)
            if envelope.correlation_id:
                span.set_attribute("correlation_id", envelope.correlation_id)

            if session_id in self._closed_sessions:
                logger.info(
                    "stale_session_envelope_dropped",
                    session_id=session_id,
                    kind=envelope.kind.value,
                    correlation_id=envelope.correlation_id,
                )
                return None

            try:
                with tracer.start_as_current_span("nucleotide_membrane_in"):
                    payload = await self.membrane.inspect_inbound(envelope)

                with tracer.start_as_current_span("nucleotide_route") as r_span:
                    observation = await self._route(envelope, payload, session_id)
                    r_span.set_attribute("event_type", observation.event_type)
            except (ProtocolError, NegotiationError) as e:
                logger.warning(
                    "envelope_rejected",
                    kind=envelope.kind.value,
                    correlation_id=envelope.correlation_id,
                    code=e.code,
                    error=str(e),
                )
                span.set_attribute("rejected", True)
                await self._reject(envelope, e)
                return Observation(
                    success=False,
                    data=None,
                    event_type="envelope_rejected",
                    correlation_id=envelope.correlation_id,
                    metadata={"code": e.code},
                )
            except Exception as e:
                # No reply; the counterparty times out
                logger.error(
                    "metabolism_cycle_failed",
                    kind=envelope.kind.value,
                    correlation_id=envelope.correlation_id,
                    error=str(e),
                    exc_info=True,
                )
                span.record_exception(e)
                return None

            logger.info(
                "metabolism_cycle_completed",
                kind=envelope.kind.value,
                correlation_id=envelope.correlation_id,
                event_type=observation.event_type,
            )
            return observation

    async def _route(
        self, envelope: Envelope, payload: Any, session_id: str
    ) -> Observation:
        cid = envelope.correlation_id or ""

        if envelope.kind == MessageKind.INQUIRY:
            return await self._inquiry(envelope, payload, session_id)

        if envelope.kind == MessageKind.NEGOTIATION:
            return await self._negotiation(cid, payload)

        if envelope.kind == MessageKind.TRANSACTION:
            return await self._transaction(cid, payload)

        if envelope.kind == MessageKind.CONFIRMATION:
            transaction = await self.processor.acknowledge(cid)
            return Observation(
                success=transaction is not None,
                data=transaction,
                event_type="transaction_acknowledged",
                correlation_id=cid,
            )

        if envelope.kind == MessageKind.BEACON_REGISTER:
            logger.info(
                "beacon_registration_acknowledged",
                beacon_id=payload.beacon_id,
                status=payload.status,
            )
            return Observation(success=True, data=payload, event_type="beacon_registered")

        raise ProtocolError(f"Unsupported inbound kind {envelope.kind.value}", correlation_id=cid)

    async def _inquiry(
        self, envelope: Envelope, payload: InquiryPayload, session_id: str
    ) -> Observation:
        inquiry = Inquiry(
            counterparty=envelope.sender,
            correlation_id=envelope.correlation_id or "",
            intent=Intent(
                raw=payload.query,
                category=payload.category,
                max_price=payload.max_price,
                budget_max=payload.budget_max,
                features=tuple(payload.features),
                quantity=payload.quantity,
                currency=payload.currency,
            ),
        )
        with tracer.start_as_current_span("nucleotide_state_machine") as span:
            negotiation = await self.machine.receive_inquiry(inquiry, session_id)
            span.set_attribute("status", negotiation.status.value)
        return Observation(
            success=negotiation.status == NegotiationStatus.PROPOSED,
            data=negotiation,
            event_type=f"inquiry_{negotiation.status.value}",
            correlation_id=negotiation.correlation_id,
        )

    async def _negotiation(self, cid: str, payload: NegotiationPayload) -> Observation:
        with tracer.start_as_current_span("nucleotide_state_machine") as span:
            negotiation = await self.machine.negotiate(
                cid,
                payload.action,
                price=payload.price,
                proposition_id=payload.proposition_id,
                currency=payload.currency,
                scope=payload.scope,
            )
            span.set_attribute("status", negotiation.status.value)

        transaction = None
        if negotiation.status == NegotiationStatus.ACCEPTED:
            accepted = await self.machine.handoff(cid)
            if accepted is not None:
                with tracer.start_as_current_span("nucleotide_processor") as p_span:
                    transaction = await self.processor.commit(accepted)
                    p_span.set_attribute("status", transaction.status.value)

        return Observation(
            success=negotiation.status != NegotiationStatus.DECLINED,
            data=negotiation,
            event_type=f"negotiation_{negotiation.status.value}",
            correlation_id=cid,
            metadata={"transaction": transaction},
        )

    async def _transaction(self, cid: str, payload: TransactionPayload) -> Observation:
        negotiation = await self.machine.lookup(cid)
        if negotiation is None or negotiation.status != NegotiationStatus.ACCEPTED:
            raise InvalidTerms(
                f"No accepted negotiation for {cid}", correlation_id=cid
            )
        if (
            payload.price is not None
            and negotiation.agreed_price is not None
            and abs(payload.price - negotiation.agreed_price) > PRICE_TOLERANCE
        ):
            raise InvalidTerms(
                f"Transaction price {payload.price} differs from agreed {negotiation.agreed_price}",
                correlation_id=cid,
            )

        await self.machine.handoff(cid)
        with tracer.start_as_current_span("nucleotide_processor") as span:
            transaction = await self.processor.commit(negotiation)
            span.set_attribute("status", transaction.status.value)
        return Observation(
            success=transaction.status == TransactionStatus.COMMITTED,
            data=transaction,
            event_type=f"transaction_{transaction.status.value}",
            correlation_id=cid,
        )

    async def _reject(self, envelope: Envelope, error: BeaconError) -> None:
        cid = envelope.correlation_id or error.correlation_id
        if not cid:
            return

        negotiation = await self.machine.lookup(cid)
        if negotiation is not None:
            # A duplicate inquiry or a message for a finished negotiation gets no terminal reply
            if envelope.kind == MessageKind.INQUIRY or negotiation.is_terminal:
                logger.info(
                    "decline_reply_suppressed",
                    correlation_id=cid,
                    status=negotiation.status.value,
                )
                return
            if await self.machine.reject(cid) is None:
                return

        decline = Envelope(
            kind=MessageKind.NEGOTIATION,
            correlation_id=cid,
            sender=self.beacon_id,
            recipient=envelope.sender,
            payload={
                "status": NegotiationStatus.DECLINED.value,
                "reason": DeclineReason.INVALID_TERMS.value,
                "error": error.code,
                "message": str(error),
            },
        )
        try:
            await self.outbox(decline)
        except BeaconError as e:
            logger.warning("decline_send_failed", correlation_id=cid, error=str(e))
