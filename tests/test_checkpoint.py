from cloudkit_web.checkpoint import clear_cursor, load_cursor, store_cursor
from cloudkit_web.query import Cursor


def test_missing_file_is_no_cursor(tmp_path):
    assert load_cursor(str(tmp_path / "none.json")) is None


def test_store_and_load_roundtrip(tmp_path):
    path = str(tmp_path / "nested" / "cursor.json")
    cursor = Cursor("opaque+/==marker", "abc123")
    store_cursor(path, cursor)
    assert load_cursor(path) == cursor
    assert not (tmp_path / "nested" / "cursor.json.tmp").exists()


def test_corrupt_file_is_no_cursor(tmp_path):
    path = tmp_path / "cursor.json"
    path.write_text("{not json")
    assert load_cursor(str(path)) is None
    path.write_text('{"continuationMarker": ""}')
    assert load_cursor(str(path)) is None


def test_clear_cursor(tmp_path):
    path = str(tmp_path / "cursor.json")
    store_cursor(path, Cursor("m"))
    clear_cursor(path)
    assert load_cursor(path) is None
    clear_cursor(path)  # already gone
