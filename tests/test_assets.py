import httpx
import pytest

from cloudkit_web.errors import AssetUploadError, TransportError
from cloudkit_web.models.records import Asset, Record, ZoneID
from cloudkit_web.signing import SIGNATURE_HEADER

from conftest import FakeService, json_response, server_record

pytestmark = pytest.mark.asyncio

UPLOAD = "https://upload.test/"


def _tokens(request):
    body = FakeService.body(request)
    return json_response(
        {
            "tokens": [
                {"recordName": t["recordName"], "fieldName": t["fieldName"], "url": f"{UPLOAD}{i}"}
                for i, t in enumerate(body["tokens"])
            ]
        }
    )


def _upload(request: httpx.Request):
    # echo the uploaded bytes back as the checksum so tests can tell sources apart
    content = request.content
    marker = content.split(b"\r\n\r\n", 1)[1].split(b"\r\n--", 1)[0].decode("utf-8")
    return json_response({"singleFile": {"fileChecksum": f"ck-{marker}", "receipt": f"rc-{marker}", "size": len(marker)}})


def _modify(request):
    body = FakeService.body(request)
    return json_response(
        {
            "records": [
                server_record(op["record"]["recordName"], fields=op["record"].get("fields"))
                for op in body["operations"]
            ]
        }
    )


async def test_single_asset_save_flow(make_db, fake_service: FakeService, tmp_path, ec_key):
    photo = tmp_path / "photo.png"
    photo.write_bytes(b"PNGDATA")
    fake_service.route("assets/upload", _tokens)
    fake_service.route(UPLOAD, _upload)
    fake_service.route("records/modify", _modify)
    db = make_db(private_key=ec_key)

    record = Record("Photo", "PH1", fields={"title": "beach", "image": Asset(file_path=photo)})
    [result] = await db.save_records([record])

    assert result.ok
    token_calls = fake_service.to("assets/upload")
    uploads = fake_service.to(UPLOAD)
    modifies = fake_service.to("records/modify")
    assert len(token_calls) == 1 and len(uploads) == 1 and len(modifies) == 1
    assert FakeService.body(token_calls[0]) == {
        "tokens": [{"recordName": "PH1", "recordType": "Photo", "fieldName": "image"}]
    }
    assert SIGNATURE_HEADER in token_calls[0].headers
    assert SIGNATURE_HEADER in modifies[0].headers
    # transfer goes to the token URL, unsigned, as a multipart "files" part
    assert str(uploads[0].url) == f"{UPLOAD}0"
    assert SIGNATURE_HEADER not in uploads[0].headers
    assert uploads[0].headers["content-type"].startswith("multipart/form-data")
    assert b'name="files"; filename="photo.png"' in uploads[0].content

    image = FakeService.body(modifies[0])["operations"][0]["record"]["fields"]["image"]
    assert image == {"value": {"fileChecksum": "ck-PNGDATA", "receipt": "rc-PNGDATA", "size": 7}, "type": "ASSETID"}
    assert fake_service.requests.index(uploads[0]) < fake_service.requests.index(modifies[0])


async def test_asset_list_uses_each_source_once(make_db, fake_service: FakeService, tmp_path):
    files = []
    for name in ("a", "b", "c"):
        path = tmp_path / f"{name}.bin"
        path.write_bytes(name.upper().encode())
        files.append(Asset(file_path=path))
    fake_service.route("assets/upload", _tokens)
    fake_service.route(UPLOAD, _upload)
    fake_service.route("records/modify", _modify)
    db = make_db()

    [result] = await db.save_records([Record("Album", "AL1", fields={"pics": files})])

    assert result.ok
    assert len(fake_service.to(UPLOAD)) == 3
    pics = FakeService.body(fake_service.to("records/modify")[0])["operations"][0]["record"]["fields"]["pics"]
    assert pics["type"] == "ASSETID_LIST"
    assert [v["fileChecksum"] for v in pics["value"]] == ["ck-A", "ck-B", "ck-C"]


async def test_transfer_failure_aborts_only_that_record(make_db, fake_service: FakeService, tmp_path):
    good = tmp_path / "good.png"
    good.write_bytes(b"OK")
    missing = tmp_path / "gone.png"  # never created
    fake_service.route("assets/upload", _tokens)
    fake_service.route(UPLOAD, _upload)
    fake_service.route("records/modify", _modify)
    db = make_db()

    results = await db.save_records(
        [
            Record("Photo", "GOOD", fields={"image": Asset(file_path=good)}),
            Record("Photo", "BAD", fields={"image": Asset(file_path=missing)}),
        ]
    )

    by_name = {r.record_name: r for r in results}
    assert by_name["GOOD"].ok
    assert isinstance(by_name["BAD"].error, AssetUploadError)
    [modify] = fake_service.to("records/modify")
    sent = [op["record"]["recordName"] for op in FakeService.body(modify)["operations"]]
    assert sent == ["GOOD"]


async def test_upload_http_failure_is_charged_to_record(make_db, fake_service: FakeService, tmp_path):
    photo = tmp_path / "p.png"
    photo.write_bytes(b"X")
    fake_service.route("assets/upload", _tokens)
    fake_service.route(UPLOAD, lambda request: httpx.Response(500, text="boom"))
    fake_service.route("records/modify", _modify)
    db = make_db()

    [result] = await db.save_records([Record("Photo", "P", fields={"image": Asset(file_path=photo)})])

    assert isinstance(result.error, TransportError)
    assert fake_service.to("records/modify") == []


async def test_records_without_assets_skip_token_phase(make_db, fake_service: FakeService):
    fake_service.route("records/modify", _modify)
    db = make_db()
    await db.save_records([Record("Note", "N1", fields={"text": "hi"})])
    assert fake_service.to("assets/upload") == []


async def test_slot_without_token_fails_its_record(make_db, fake_service: FakeService, tmp_path):
    photo = tmp_path / "p.png"
    photo.write_bytes(b"X")
    fake_service.route("assets/upload", lambda request: json_response({"tokens": []}))
    fake_service.route("records/modify", _modify)
    db = make_db()

    [result] = await db.save_records([Record("Photo", "P", fields={"image": Asset(file_path=photo)})])

    assert isinstance(result.error, AssetUploadError)
    assert fake_service.to(UPLOAD) == []
    assert fake_service.to("records/modify") == []


async def test_client_zone_is_sent_with_every_request(make_db, fake_service: FakeService, tmp_path):
    photo = tmp_path / "photo.png"
    photo.write_bytes(b"Z")
    fake_service.route("assets/upload", _tokens)
    fake_service.route(UPLOAD, _upload)
    fake_service.route("records/modify", _modify)
    fake_service.route("records/lookup", lambda request: json_response({"records": [server_record("PH1")]}))
    db = make_db(zone_id=ZoneID("Photos"))

    [saved] = await db.save_records([Record("Photo", "PH1", fields={"image": Asset(file_path=photo)})])
    [fetched] = await db.fetch_records(["PH1"])
    await db.delete_records(["PH1"])

    assert saved.ok and fetched.ok
    token_call = fake_service.to("assets/upload")[0]
    save_call, delete_call = fake_service.to("records/modify")
    lookup_call = fake_service.to("records/lookup")[0]
    for request in (token_call, save_call, lookup_call, delete_call):
        assert FakeService.body(request)["zoneID"] == {"zoneName": "Photos"}


async def test_default_zone_is_left_to_the_server(make_db, fake_service: FakeService):
    fake_service.route("records/lookup", lambda request: json_response({"records": [server_record("A")]}))
    db = make_db()
    await db.fetch_records(["A"])
    assert "zoneID" not in FakeService.body(fake_service.to("records/lookup")[0])
