import asyncio
import sys
from dataclasses import dataclass
from typing import Any

import nats
import nats.errors
import structlog

from aura_beacon.config import BeaconSettings, get_settings
from aura_beacon.db import create_db_engine, create_session_factory, init_db
from aura_beacon.errors import LinkDown, RegistrationError, TransportError
from aura_beacon.hive.connector import SessionConnector
from aura_beacon.hive.dna import DiagnosticSink, Transport
from aura_beacon.hive.generator import BeaconGenerator
from aura_beacon.hive.membrane import BeaconMembrane
from aura_beacon.hive.metabolism import BeaconMetabolism, Outbox
from aura_beacon.inventory import InMemoryInventory, sample_inventory
from aura_beacon.logging_config import configure_logging
from aura_beacon.negotiation.machine import NegotiationStateMachine
from aura_beacon.pricing import RuleBasedPricing
from aura_beacon.registration import CoreClient
from aura_beacon.store import BeaconStore, MemoryStore, SqlStore
from aura_beacon.telemetry import init_telemetry
from aura_beacon.transaction.committers import (
    HttpOrderCommitter,
    InventoryOrderCommitter,
    OrderCommitter,
)
from aura_beacon.transaction.processor import TransactionProcessor
from aura_beacon.transports.websocket import WebSocketTransport

logger = structlog.get_logger(__name__)


@dataclass
class Beacon:
    """A fully wired Beacon."""

    connector: SessionConnector
    machine: NegotiationStateMachine
    processor: TransactionProcessor
    metabolism: BeaconMetabolism
    store: BeaconStore

    async def start(self) -> None:
        await self.processor.resume_pending()
        await self.connector.start()

    async def stop(self) -> None:
        await self.connector.close()
        await self.metabolism.drain()
        await self.machine.shutdown()
        if isinstance(self.processor.committer, HttpOrderCommitter):
            await self.processor.committer.aclose()


def create_committer(
    settings: BeaconSettings, inventory: InMemoryInventory
) -> OrderCommitter:
    transaction = settings.transaction
    if transaction.order_api_url:
        logger.info("order_api_configured", url=transaction.order_api_url)
        return HttpOrderCommitter(
            transaction.order_api_url,
            api_key=transaction.order_api_key,
            timeout=transaction.order_timeout_seconds,
        )
    return InventoryOrderCommitter(inventory)


def create_store(settings: BeaconSettings) -> BeaconStore:
    if not settings.database.durable:
        return MemoryStore(archive_size=settings.negotiation.archive_size)
    engine = create_db_engine(settings.database.url)
    init_db(engine)
    return SqlStore(create_session_factory(engine))


def create_beacon(
    settings: BeaconSettings,
    transport: Transport,
    beacon_id: str,
    inventory: InMemoryInventory | None = None,
    committer: OrderCommitter | None = None,
    store: BeaconStore | None = None,
    sink: DiagnosticSink | None = None,
    nats_client: Any = None,
    profile: dict[str, Any] | None = None,
) -> Beacon:
    """Wire connector, state machine, processor and metabolism together."""
    inventory = inventory if inventory is not None else sample_inventory()
    store = store or create_store(settings)
    generator = BeaconGenerator(nats_client, beacon_id=beacon_id)

    def floor_lookup(item_id: str) -> float | None:
        item = inventory.get(item_id)
        return item.floor_price if item else None

    membrane = BeaconMembrane(floor_lookup=floor_lookup)
    connector = SessionConnector(transport, settings.connector, sink=sink)
    outbox = Outbox(connector, membrane)

    machine = NegotiationStateMachine(
        inventory=inventory,
        pricing=RuleBasedPricing(settings.negotiation),
        send=outbox,
        settings=settings.negotiation,
        store=store,
        generator=generator,
        beacon_id=beacon_id,
    )
    processor = TransactionProcessor(
        committer=committer or create_committer(settings, inventory),
        send=outbox,
        store=store,
        settings=settings.transaction,
        generator=generator,
        beacon_id=beacon_id,
    )
    metabolism = BeaconMetabolism(
        machine=machine,
        processor=processor,
        membrane=membrane,
        outbox=outbox,
        profile=profile,
        beacon_id=beacon_id,
    )
    metabolism.attach(connector)
    return Beacon(
        connector=connector,
        machine=machine,
        processor=processor,
        metabolism=metabolism,
        store=store,
    )


async def connect_nats(url: str | None) -> Any:
    if not url:
        return None
    try:
        nc = await nats.connect(url, connect_timeout=5.0)
    except (OSError, TimeoutError, nats.errors.Error) as e:
        logger.warning("nats_connection_failed", error=str(e), url=url)
        return None
    logger.info("nats_connected", url=url)
    return nc


async def serve(settings: BeaconSettings | None = None) -> int:
    settings = settings or get_settings()
    configure_logging(settings.server.log_level, settings.server.log_format)
    if settings.server.telemetry_enabled:
        init_telemetry(
            settings.server.otel_service_name,
            str(settings.server.otel_exporter_otlp_endpoint),
        )

    core = CoreClient(settings.core)
    try:
        registration = await core.register()
    except (RegistrationError, TransportError) as e:
        logger.error("beacon_registration_failed", error=str(e), code=e.code)
        await core.aclose()
        return 1

    nc = await connect_nats(settings.server.nats_url)
    transport = WebSocketTransport(
        core.socket_url(settings.connector.url),
        connect_timeout=settings.connector.connect_timeout_seconds,
    )
    beacon = create_beacon(
        settings,
        transport,
        beacon_id=registration.beacon_id,
        nats_client=nc,
        profile=core.profile(),
    )

    logger.info(
        "beacon_started",
        beacon_id=registration.beacon_id,
        core_url=settings.core.url,
        durable=settings.database.durable,
    )
    exit_code = 0
    await beacon.start()
    try:
        await beacon.connector.wait()
    except LinkDown as e:
        logger.error("beacon_link_down", attempts=e.attempts, error=str(e))
        exit_code = 1
    finally:
        await beacon.stop()
        await core.aclose()
        if nc is not None:
            await nc.close()
    return exit_code


def run() -> None:
    try:
        sys.exit(asyncio.run(serve()))
    except KeyboardInterrupt:
        logger.info("beacon_stopped")


if __name__ == "__main__":
    run()
