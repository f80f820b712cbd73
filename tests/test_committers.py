import json

import httpx
import pytest

from aura_beacon.errors import PermanentCommitError, TransientCommitError
from aura_beacon.transaction.committers import HttpOrderCommitter
from aura_beacon.transaction.models import OrderTerms

ORDERS_URL = "http://orders.test"


@pytest.fixture
def terms():
    return OrderTerms(
        correlation_id="cid-1",
        proposition_id="ofr_1",
        item_id="prod_headphones",
        price=90.0,
        quantity=2,
        currency="USD",
        counterparty="scout-1",
    )


def committer(handler) -> HttpOrderCommitter:
    client = httpx.AsyncClient(
        base_url=ORDERS_URL, transport=httpx.MockTransport(handler)
    )
    return HttpOrderCommitter(ORDERS_URL, client=client)


@pytest.mark.asyncio
async def test_commit_sends_idempotency_key(terms):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"order_id": "ORD-77"})

    result = await committer(handler).commit_order(terms)

    assert result.order_ref == "ORD-77"
    [request] = seen
    assert request.url.path == "/orders"
    assert request.headers["Idempotency-Key"] == "cid-1"
    assert json.loads(request.content)["total"] == 180.0


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [429, 500, 503])
async def test_retryable_status_is_transient(terms, status_code):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code)

    with pytest.raises(TransientCommitError):
        await committer(handler).commit_order(terms)


@pytest.mark.asyncio
async def test_timeout_is_transient(terms):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(TransientCommitError):
        await committer(handler).commit_order(terms)


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [400, 409, 422])
async def test_client_error_is_permanent(terms, status_code):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json={"detail": "out of stock"})

    with pytest.raises(PermanentCommitError):
        await committer(handler).commit_order(terms)


@pytest.mark.asyncio
async def test_response_without_order_id_is_permanent(terms):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "ok"})

    with pytest.raises(PermanentCommitError):
        await committer(handler).commit_order(terms)
