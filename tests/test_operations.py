from datetime import datetime, timezone

import pytest

from cloudkit_web.errors import UnknownItemError, UnsupportedFieldError
from cloudkit_web.models.records import Record, ZoneID
from cloudkit_web.operations import (
    OperationType,
    build_delete_request,
    build_lookup_request,
    build_modify_request,
    default_operation,
)

from conftest import FakeService, json_response, server_record

pytestmark = pytest.mark.asyncio


async def test_unsaved_record_defaults_to_create():
    record = Record("Person", "P1")
    assert default_operation(record) is OperationType.CREATE
    request = build_modify_request([record])
    assert request.operations[0].operationType == "create"


async def test_saved_record_defaults_to_update_with_tag():
    record = Record("Person", "P1", change_tag="t1", created=datetime(2024, 1, 1, tzinfo=timezone.utc))
    data = build_modify_request([record]).model_dump(exclude_none=True)
    assert data["operations"][0]["operationType"] == "update"
    assert data["operations"][0]["record"]["recordChangeTag"] == "t1"


async def test_explicit_operation_type_overrides_default():
    request = build_modify_request([Record("Person", "P1")], "forceReplace")
    assert request.operations[0].operationType == "forceReplace"
    with pytest.raises(ValueError):
        build_modify_request([Record("Person", "P1")], OperationType.DELETE)


async def test_delete_defaults_to_force_delete_with_identity_only():
    data = build_delete_request(["A", Record("Person", "B", change_tag="t2")]).model_dump(exclude_none=True)
    assert data["operations"] == [
        {"operationType": "forceDelete", "record": {"recordName": "A"}},
        {"operationType": "forceDelete", "record": {"recordName": "B", "recordChangeTag": "t2"}},
    ]


async def test_builders_carry_zone():
    zone = ZoneID("Photos", "_owner")
    expected = {"zoneName": "Photos", "ownerName": "_owner"}
    for request in (
        build_modify_request([Record("Person", "P1")], zone_id=zone),
        build_delete_request(["P1"], zone_id=zone),
        build_lookup_request(["P1"], zone_id=zone),
    ):
        assert request.model_dump(exclude_none=True)["zoneID"] == expected


async def test_lookup_request():
    data = build_lookup_request(["A", "B"], ["name"]).model_dump(exclude_none=True)
    assert data == {"records": [{"recordName": "A"}, {"recordName": "B"}], "desiredKeys": ["name"]}


async def test_save_batch_is_one_request(make_db, fake_service: FakeService):
    def modify(request):
        body = FakeService.body(request)
        return json_response(
            {"records": [server_record(op["record"]["recordName"]) for op in body["operations"]]}
        )

    fake_service.route("records/modify", modify)
    db = make_db()
    records = [Record("Person", f"P{i}", fields={"n": i}) for i in range(5)]
    results = await db.save_records(records)
    assert len(fake_service.requests) == 1
    assert [r.record_name for r in results] == ["P0", "P1", "P2", "P3", "P4"]
    assert all(r.ok for r in results)
    path = fake_service.requests[0].url.path
    assert path == "/database/1/iCloud.com.example.app/development/public/records/modify"


async def test_unsupported_field_fails_before_any_request(make_db, fake_service: FakeService):
    db = make_db()
    with pytest.raises(UnsupportedFieldError):
        await db.save_records([Record("Person", "A", fields={"ok": 1}), Record("Person", "B", fields={"bad": object()})])
    assert fake_service.requests == []


async def test_empty_batches_make_no_request(make_db, fake_service: FakeService):
    db = make_db()
    assert await db.save_records([]) == []
    assert await db.fetch_records([]) == []
    assert await db.delete_records([]) == []
    assert fake_service.requests == []


async def test_fetch_partial_failure(make_db, fake_service: FakeService):
    fake_service.route(
        "records/lookup",
        lambda request: json_response(
            {
                "records": [
                    server_record("A"),
                    {"recordName": "B", "serverErrorCode": "NOT_FOUND"},
                    server_record("C"),
                ]
            }
        ),
    )
    db = make_db(scope="private", environment="production")
    results = await db.fetch_records(["A", "B", "C"])
    assert [r.ok for r in results] == [True, False, True]
    assert isinstance(results[1].error, UnknownItemError)
    assert fake_service.requests[0].url.path.endswith("/production/private/records/lookup")


async def test_single_fetch_raises_item_error(make_db, fake_service: FakeService):
    fake_service.route(
        "records/lookup",
        lambda request: json_response({"records": [{"recordName": "B", "serverErrorCode": "NOT_FOUND"}]}),
    )
    db = make_db()
    with pytest.raises(UnknownItemError):
        await db.fetch_record("B")


async def test_single_delete_returns_name(make_db, fake_service: FakeService):
    fake_service.route(
        "records/modify", lambda request: json_response({"records": [{"recordName": "A", "deleted": True}]})
    )
    db = make_db()
    assert await db.delete_record("A") == "A"
    body = FakeService.body(fake_service.requests[0])
    assert body["operations"][0]["operationType"] == "forceDelete"


async def test_save_batch_reports_item_failure_in_place(make_db, fake_service: FakeService):
    fake_service.route(
        "records/modify",
        lambda request: json_response(
            {
                "records": [
                    server_record("P0"),
                    {"recordName": "P1", "serverErrorCode": "NOT_FOUND", "reason": "gone"},
                    server_record("P2"),
                ]
            }
        ),
    )
    db = make_db()
    records = [Record("Person", f"P{i}", fields={"n": i}) for i in range(3)]
    results = await db.save_records(records)

    assert len(fake_service.requests) == 1
    assert [r.record_name for r in results] == ["P0", "P1", "P2"]
    assert [r.ok for r in results] == [True, False, True]
    assert isinstance(results[1].error, UnknownItemError)
