import asyncio
import json

import httpx
import pytest

from cloudkit_web.database import DatabaseClient
from cloudkit_web.query import Query
from cloudkit_web.signing import RequestSigner
from cloudkit_web.transport import CloudKitTransport

from conftest import CONTAINER, HOST, server_record

pytestmark = pytest.mark.asyncio


def _db(handler) -> DatabaseClient:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return DatabaseClient(CloudKitTransport(RequestSigner("kid"), host=HOST, client=client), CONTAINER)


async def test_cancelling_one_operation_leaves_the_other_intact():
    slow_started = asyncio.Event()
    never = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        name = json.loads(request.content)["records"][0]["recordName"]
        if name == "SLOW":
            slow_started.set()
            await never.wait()
        return httpx.Response(200, json={"records": [server_record(name)]})

    db = _db(handler)
    slow = asyncio.create_task(db.fetch_record("SLOW"))
    await slow_started.wait()
    fast = asyncio.create_task(db.fetch_record("FAST"))
    slow.cancel()

    record = await fast
    assert record.record_name == "FAST"
    with pytest.raises(asyncio.CancelledError):
        await slow


async def test_concurrent_queries_keep_their_own_cursors():
    async def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        record_type = body["query"]["recordType"]
        start = int(body.get("continuationMarker", "0"))
        await asyncio.sleep(0)
        payload = {"records": [server_record(f"{record_type}-{start + i}", record_type) for i in range(2)]}
        if start < 4:
            payload["continuationMarker"] = str(start + 2)
        return httpx.Response(200, json=payload)

    db = _db(handler)

    async def collect(record_type):
        return [r.record_name async for r in db.iterate_query(Query(record_type), results_limit=2)]

    left, right = await asyncio.gather(collect("A"), collect("B"))
    assert left == [f"A-{i}" for i in range(6)]
    assert right == [f"B-{i}" for i in range(6)]
