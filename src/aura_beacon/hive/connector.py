import asyncio
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from aura_beacon.config import ConnectorSettings
from aura_beacon.errors import LinkDown, NotConnected, ProtocolError, TransportError
from aura_beacon.retry import backoff_delay

from .dna import DiagnosticSink, StructlogDiagnosticSink, Transport
from .types import Envelope

logger = structlog.get_logger(__name__)

MessageHandler = Callable[[Envelope, str], Awaitable[None]]
SessionHandler = Callable[[str], Awaitable[None]]
LinkDownHandler = Callable[[LinkDown], Awaitable[None]]


class SessionConnector:
    """
    Keeps one duplex session with AURA Core alive.

    Outbound envelopes go through a bounded queue that survives reconnects.
    Inbound envelopes are handed to the registered handlers one at a time,
    in arrival order. Link loss is retried with exponential backoff until
    the retry budget runs out, which is reported once as LinkDown.
    """

    def __init__(
        self,
        transport: Transport,
        settings: ConnectorSettings | None = None,
        sink: DiagnosticSink | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.transport = transport
        self.settings = settings or ConnectorSettings()
        self.sink = sink or StructlogDiagnosticSink()
        self._sleep = sleep

        self._queue: deque[Envelope] = deque()
        self._cond = asyncio.Condition()
        self._session_id: str | None = None
        self._closing = False
        self._link_down: LinkDown | None = None
        self._task: asyncio.Task | None = None

        self._message_handlers: list[MessageHandler] = []
        self._connect_handlers: list[SessionHandler] = []
        self._disconnect_handlers: list[SessionHandler] = []
        self._link_down_handlers: list[LinkDownHandler] = []

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def connected(self) -> bool:
        return self._session_id is not None

    @property
    def queued(self) -> int:
        return len(self._queue)

    def on_message(self, handler: MessageHandler) -> None:
        self._message_handlers.append(handler)

    def on_connect(self, handler: SessionHandler) -> None:
        self._connect_handlers.append(handler)

    def on_disconnect(self, handler: SessionHandler) -> None:
        self._disconnect_handlers.append(handler)

    def on_link_down(self, handler: LinkDownHandler) -> None:
        self._link_down_handlers.append(handler)

    async def send(self, envelope: Envelope) -> None:
        """
        Queue an envelope for delivery.

        With no session and a full queue, ``reject`` raises NotConnected and
        ``drop_oldest`` evicts the oldest queued envelope. With a live session
        and a full queue this waits for the writer to make room.
        """
        if self._link_down is not None:
            raise NotConnected("Link is down", correlation_id=envelope.correlation_id)

        async with self._cond:
            while len(self._queue) >= self.settings.queue_capacity:
                if self._session_id is None:
                    if self.settings.overflow_policy == "reject":
                        self._record(
                            "envelope_rejected",
                            kind=envelope.kind.value,
                            correlation_id=envelope.correlation_id,
                        )
                        raise NotConnected(
                            f"Not connected and outbound queue is full ({len(self._queue)})",
                            correlation_id=envelope.correlation_id,
                        )
                    dropped = self._queue.popleft()
                    logger.warning(
                        "outbound_envelope_dropped",
                        kind=dropped.kind.value,
                        correlation_id=dropped.correlation_id,
                    )
                    self._record(
                        "envelope_dropped",
                        kind=dropped.kind.value,
                        correlation_id=dropped.correlation_id,
                    )
                    break
                await self._cond.wait()

            self._queue.append(envelope)
            self._cond.notify_all()

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._closing = False
            self._task = asyncio.create_task(self._run(), name="session-connector")

    async def wait(self) -> None:
        """Block until the connector stops; raises LinkDown if the link died."""
        if self._task is not None:
            await self._task

    async def close(self) -> None:
        self._closing = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self._safe_close_transport()
        logger.info("connector_closed", queued=len(self._queue))

    async def _run(self) -> None:
        attempt = 0
        last_error: Exception | None = None

        while not self._closing:
            if attempt:
                if attempt > self.settings.max_retries:
                    await self._fail(attempt - 1, last_error)
                delay = backoff_delay(
                    attempt,
                    self.settings.backoff_base_seconds,
                    self.settings.backoff_multiplier,
                    self.settings.backoff_cap_seconds,
                )
                logger.info("connector_reconnect_scheduled", attempt=attempt, delay=delay)
                await self._sleep(delay)

            try:
                await self.transport.connect()
            except TransportError as e:
                last_error = e
                attempt += 1
                logger.warning("connector_connect_failed", attempt=attempt, error=str(e))
                continue

            attempt = 0
            last_error = await self._session()
            if self._closing:
                break
            logger.warning("connector_link_lost", error=str(last_error))
            attempt = 1

    async def _session(self) -> Exception | None:
        """Run one connected session until the link fails."""
        session_id = f"sess_{uuid.uuid4().hex[:12]}"
        async with self._cond:
            self._session_id = session_id
            self._cond.notify_all()
        logger.info("connector_session_started", session_id=session_id, queued=len(self._queue))
        self._record("session_started", session_id=session_id)

        # Connect handlers may send; the writer must already be draining
        tasks = [asyncio.create_task(self._writer(session_id))]
        error: Exception | None = None
        try:
            for handler in self._connect_handlers:
                await self._call(handler, session_id)
            tasks.append(asyncio.create_task(self._reader(session_id)))
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    error = task.exception()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            async with self._cond:
                self._session_id = None
                self._cond.notify_all()
            await self._safe_close_transport()
            self._record("session_ended", session_id=session_id)

        if error is not None and not isinstance(error, TransportError):
            logger.error(
                "connector_session_crashed",
                session_id=session_id,
                error=str(error),
                exc_info=error,
            )
        for handler in self._disconnect_handlers:
            await self._call(handler, session_id)
        return error

    async def _reader(self, session_id: str) -> None:
        while True:
            text = await self.transport.recv()
            try:
                envelope = Envelope.from_json(text)
            except ProtocolError as e:
                self._record("envelope_undecodable", session_id=session_id, error=str(e))
                continue

            self._record(
                "envelope_received",
                session_id=session_id,
                kind=envelope.kind.value,
                correlation_id=envelope.correlation_id,
                envelope_id=envelope.envelope_id,
            )
            for handler in self._message_handlers:
                await self._call(handler, envelope, session_id)

    async def _writer(self, session_id: str) -> None:
        while True:
            async with self._cond:
                await self._cond.wait_for(lambda: bool(self._queue))
                envelope = self._queue[0]

            # A failed write leaves the envelope at the head for the next session
            await self.transport.send(envelope.to_json())

            async with self._cond:
                if self._queue and self._queue[0] is envelope:
                    self._queue.popleft()
                self._cond.notify_all()
            self._record(
                "envelope_sent",
                session_id=session_id,
                kind=envelope.kind.value,
                correlation_id=envelope.correlation_id,
                envelope_id=envelope.envelope_id,
            )

    async def _fail(self, attempts: int, error: Exception | None) -> None:
        link_down = LinkDown(
            f"Link down after {attempts} reconnect attempts: {error}", attempts=attempts
        )
        self._link_down = link_down
        logger.error("connector_link_down", attempts=attempts, error=str(error))
        self._record("link_down", attempts=attempts)
        for handler in self._link_down_handlers:
            await self._call(handler, link_down)
        raise link_down

    async def _call(self, handler: Callable[..., Awaitable[None]], *args: Any) -> None:
        try:
            await handler(*args)
        except Exception as e:
            logger.error(
                "connector_handler_failed",
                handler=getattr(handler, "__name__", repr(handler)),
                error=str(e),
                exc_info=True,
            )

    async def _safe_close_transport(self) -> None:
        try:
            await self.transport.close()
        except TransportError as e:
            logger.debug("transport_close_failed", error=str(e))

    def _record(self, event: str, **fields: Any) -> None:
        try:
            self.sink.record(event, **fields)
        except Exception as e:
            logger.warning("diagnostic_sink_failed", sink_event=event, error=str(e))
