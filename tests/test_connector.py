import asyncio

import pytest

from aura_beacon.config import ConnectorSettings
from aura_beacon.errors import LinkDown, NotConnected
from aura_beacon.hive.connector import SessionConnector
from aura_beacon.hive.types import Envelope, MessageKind


def envelope(cid: str, kind: MessageKind = MessageKind.PROPOSITION) -> Envelope:
    return Envelope(kind=kind, correlation_id=cid, sender="bcn_test")


@pytest.fixture
def delays():
    return []


@pytest.fixture
def connector_factory(transport, sink, delays):
    async def fake_sleep(delay):
        delays.append(delay)
        await asyncio.sleep(0)

    created = []

    def build(**overrides):
        settings = ConnectorSettings(
            queue_capacity=overrides.pop("queue_capacity", 10),
            backoff_base_seconds=0.5,
            backoff_multiplier=2.0,
            backoff_cap_seconds=4.0,
            **overrides,
        )
        connector = SessionConnector(transport, settings, sink=sink, sleep=fake_sleep)
        created.append(connector)
        return connector

    yield build

    for connector in created:
        if connector._task is not None:
            connector._task.cancel()


@pytest.mark.asyncio
async def test_envelopes_queued_while_disconnected_are_sent_in_order(
    connector_factory, transport, wait_until
):
    connector = connector_factory()
    for cid in ("cid-1", "cid-2", "cid-3"):
        await connector.send(envelope(cid))
    assert connector.queued == 3
    assert transport.sent == []

    await connector.start()
    await wait_until(lambda: len(transport.sent) == 3)

    assert [e.correlation_id for e in transport.envelopes()] == ["cid-1", "cid-2", "cid-3"]
    assert connector.queued == 0
    await connector.close()


@pytest.mark.asyncio
async def test_full_queue_rejects_when_disconnected(connector_factory, sink):
    connector = connector_factory(queue_capacity=2, overflow_policy="reject")
    await connector.send(envelope("cid-1"))
    await connector.send(envelope("cid-2"))

    with pytest.raises(NotConnected) as exc_info:
        await connector.send(envelope("cid-3"))

    assert exc_info.value.correlation_id == "cid-3"
    assert connector.queued == 2
    assert "envelope_rejected" in sink.events()


@pytest.mark.asyncio
async def test_full_queue_drops_oldest_when_configured(
    connector_factory, transport, sink, wait_until
):
    connector = connector_factory(queue_capacity=2, overflow_policy="drop_oldest")
    for cid in ("cid-1", "cid-2", "cid-3"):
        await connector.send(envelope(cid))

    dropped = [fields for event, fields in sink.records if event == "envelope_dropped"]
    assert [d["correlation_id"] for d in dropped] == ["cid-1"]

    await connector.start()
    await wait_until(lambda: len(transport.sent) == 2)
    assert [e.correlation_id for e in transport.envelopes()] == ["cid-2", "cid-3"]
    await connector.close()


@pytest.mark.asyncio
async def test_reconnect_uses_exponential_backoff(
    connector_factory, transport, delays, wait_until
):
    transport.connect_failures = 4
    connector = connector_factory(max_retries=10)

    await connector.start()
    await wait_until(lambda: connector.connected)

    # base 0.5, multiplier 2, capped at 4
    assert delays == [0.5, 1.0, 2.0, 4.0]
    assert transport.connects == 5
    await connector.close()


@pytest.mark.asyncio
async def test_link_down_after_retry_budget(connector_factory, transport, sink, delays):
    transport.connect_failures = 100
    connector = connector_factory(max_retries=2)
    reported = []

    async def on_link_down(error):
        reported.append(error)

    connector.on_link_down(on_link_down)
    await connector.start()

    with pytest.raises(LinkDown) as exc_info:
        await connector.wait()

    assert exc_info.value.attempts == 2
    assert transport.connects == 3
    assert delays == [0.5, 1.0]
    assert reported == [exc_info.value]
    assert sink.events().count("link_down") == 1

    with pytest.raises(NotConnected):
        await connector.send(envelope("cid-late"))


@pytest.mark.asyncio
async def test_link_loss_starts_a_new_session(connector_factory, transport, wait_until):
    connector = connector_factory()
    opened, closed = [], []

    async def on_connect(session_id):
        opened.append(session_id)

    async def on_disconnect(session_id):
        closed.append(session_id)

    connector.on_connect(on_connect)
    connector.on_disconnect(on_disconnect)
    await connector.start()
    await wait_until(lambda: connector.connected)
    first = connector.session_id

    transport.drop_link()
    await wait_until(lambda: len(opened) == 2)

    assert opened == [first, connector.session_id]
    assert closed == [first]
    assert transport.connects == 2
    await connector.close()
    assert not connector.connected


@pytest.mark.asyncio
async def test_failed_write_is_retried_on_next_session(
    connector_factory, transport, wait_until
):
    transport.fail_sends = 1
    connector = connector_factory()
    await connector.send(envelope("cid-1"))
    await connector.send(envelope("cid-2"))

    await connector.start()
    await wait_until(lambda: len(transport.sent) == 2)

    assert [e.correlation_id for e in transport.envelopes()] == ["cid-1", "cid-2"]
    assert transport.connects == 2
    await connector.close()


@pytest.mark.asyncio
async def test_inbound_envelopes_are_delivered_in_arrival_order(
    connector_factory, transport, wait_until
):
    connector = connector_factory()
    received = []

    async def handler(env, session_id):
        await asyncio.sleep(0)
        received.append((env.correlation_id, session_id))

    connector.on_message(handler)
    await connector.start()
    await wait_until(lambda: connector.connected)

    for i in range(5):
        transport.feed(envelope(f"cid-{i}", MessageKind.INQUIRY))
    await wait_until(lambda: len(received) == 5)

    assert [cid for cid, _ in received] == [f"cid-{i}" for i in range(5)]
    assert {sid for _, sid in received} == {connector.session_id}
    await connector.close()


@pytest.mark.asyncio
async def test_undecodable_frames_are_reported_and_skipped(
    connector_factory, transport, sink, wait_until
):
    connector = connector_factory()
    received = []

    async def handler(env, session_id):
        received.append(env.correlation_id)

    connector.on_message(handler)
    await connector.start()
    transport.feed("{not json")
    transport.feed('{"kind": "NOT_A_KIND"}')
    transport.feed(envelope("cid-ok", MessageKind.INQUIRY))
    await wait_until(lambda: received)

    assert received == ["cid-ok"]
    assert sink.events().count("envelope_undecodable") == 2
    assert connector.connected
    await connector.close()


@pytest.mark.asyncio
async def test_failing_handler_does_not_stop_the_reader(
    connector_factory, transport, wait_until
):
    connector = connector_factory()
    received = []

    async def handler(env, session_id):
        if env.correlation_id == "cid-boom":
            raise RuntimeError("boom")
        received.append(env.correlation_id)

    connector.on_message(handler)
    await connector.start()
    transport.feed(envelope("cid-boom", MessageKind.INQUIRY))
    transport.feed(envelope("cid-after", MessageKind.INQUIRY))
    await wait_until(lambda: received)

    assert received == ["cid-after"]
    assert transport.connects == 1
    await connector.close()


@pytest.mark.asyncio
async def test_full_queue_waits_for_room_while_connected(
    connector_factory, transport, wait_until
):
    transport.send_gate = asyncio.Event()
    connector = connector_factory(queue_capacity=1)
    await connector.start()
    await wait_until(lambda: connector.connected)

    await connector.send(envelope("cid-1"))
    blocked = asyncio.create_task(connector.send(envelope("cid-2")))
    await asyncio.sleep(0.05)
    assert not blocked.done()

    transport.send_gate.set()
    await blocked
    await wait_until(lambda: len(transport.sent) == 2)
    assert [e.correlation_id for e in transport.envelopes()] == ["cid-1", "cid-2"]
    await connector.close()
