import pytest

from cloudkit_web.errors import QueryError, ServerError, UnknownItemError
from cloudkit_web.query import Comparator, Comparison, Cursor, Query

from conftest import FakeService, json_response, server_record

pytestmark = pytest.mark.asyncio

TOTAL = 450


def _paged_query(request):
    """Serve TOTAL records in pages; the marker is the next offset."""
    body = FakeService.body(request)
    limit = body["resultsLimit"]
    start = int(body.get("continuationMarker", "0"))
    end = min(start + limit, TOTAL)
    payload = {"records": [server_record(f"R{i:04d}") for i in range(start, end)]}
    if end < TOTAL:
        payload["continuationMarker"] = str(end)
    return json_response(payload)


async def test_iterate_query_visits_every_record_once(make_db, fake_service: FakeService):
    fake_service.route("records/query", _paged_query)
    db = make_db()
    names = [r.record_name async for r in db.iterate_query(Query("Item"), results_limit=200)]
    assert len(fake_service.requests) == 3
    assert names == [f"R{i:04d}" for i in range(TOTAL)]
    assert [FakeService.body(r).get("continuationMarker") for r in fake_service.requests] == [None, "200", "400"]


async def test_perform_then_fetch_more(make_db, fake_service: FakeService):
    fake_service.route("records/query", _paged_query)
    db = make_db()
    q = Query("Item")
    page = await db.perform_query(q)
    assert len(page.records) == 200
    assert page.cursor is not None
    page = await db.fetch_more(q, page.cursor)
    assert page.records[0].record_name == "R0200"
    page = await db.fetch_more(q, page.cursor)
    assert len(page.records) == 50
    assert page.cursor is None


async def test_fetch_more_rejects_cursor_of_other_query(make_db, fake_service: FakeService):
    fake_service.route("records/query", _paged_query)
    db = make_db()
    page = await db.perform_query(Query("Item"))
    other = Query("Item", Comparison("n", Comparator.EQUALS, 1))
    with pytest.raises(QueryError):
        await db.fetch_more(other, page.cursor)
    assert len(fake_service.requests) == 1


async def test_cursor_without_fingerprint_is_accepted(make_db, fake_service: FakeService):
    fake_service.route("records/query", _paged_query)
    db = make_db()
    page = await db.fetch_more(Query("Item"), Cursor("400"))
    assert len(page.records) == 50


async def test_query_server_error_fails_whole_call(make_db, fake_service: FakeService):
    fake_service.route(
        "records/query",
        lambda request: json_response({"serverErrorCode": "BAD_REQUEST", "reason": "unknown type"}, 400),
    )
    db = make_db()
    with pytest.raises(ServerError):
        await db.perform_query(Query("Nope"))


async def test_item_failure_mid_page_does_not_stop_paging(make_db, fake_service: FakeService):
    def with_missing_item(request):
        response = _paged_query(request)
        payload = response.json()
        payload["records"] = [
            {"recordName": e["recordName"], "serverErrorCode": "NOT_FOUND"} if e["recordName"] == "R0250" else e
            for e in payload["records"]
        ]
        return json_response(payload)

    fake_service.route("records/query", with_missing_item)
    db = make_db()
    results = [r async for r in db.iterate_query(Query("Item"), results_limit=200)]

    assert [r.record_name for r in results] == [f"R{i:04d}" for i in range(TOTAL)]
    failed = [r for r in results if not r.ok]
    assert len(failed) == 1
    assert failed[0].record_name == "R0250"
    assert isinstance(failed[0].error, UnknownItemError)
    assert all(r.record is not None for r in results[251:])
    assert len(fake_service.requests) == 3
