import json

import pytest

from chatrelay.filelib import INDEX_NAME, FileInfo, FileLibrary


def test_fileinfo_round_trip():
    info = FileInfo(".png", 2048, "10:11:12")
    assert FileInfo.from_json(info.to_json()) == info


def test_fileinfo_accepts_float_size_and_missing_time():
    assert FileInfo.from_json([".txt", 12.0]) == FileInfo(".txt", 12, "")


@pytest.mark.parametrize("data", [[], [".txt"], {"a": 1}, [1, 2], [".txt", "big"]])
def test_fileinfo_rejects_malformed(data):
    with pytest.raises(ValueError):
        FileInfo.from_json(data)


def test_reserved_keys_are_distinct_numbers(tmp_path):
    library = FileLibrary(tmp_path, 10)
    keys = [library.reserve_key() for _ in range(10)]
    assert len(set(keys)) == 10
    assert all(key.isdigit() and 0 <= int(key) < 100000 for key in keys)


def test_running_out_of_keys_raises(tmp_path):
    library = FileLibrary(tmp_path, 2)
    library.reserve_key()
    library.reserve_key()
    with pytest.raises(LookupError):
        library.reserve_key()


def test_add_get_and_contains(tmp_path):
    library = FileLibrary(tmp_path, 1)
    info = FileInfo(".txt", 5, "01:02:03")
    library.add("123", info)
    assert "123" in library
    assert "124" not in library
    assert library.get("123") == info


def test_get_unknown_key_raises(tmp_path):
    library = FileLibrary(tmp_path, 1)
    with pytest.raises(KeyError):
        library.get("999")


def test_save_and_reload(tmp_path):
    info = FileInfo(".doc", 77, "08:00:00")
    with FileLibrary(tmp_path, 1) as library:
        library.add("42", info)
    stored = json.loads((tmp_path / INDEX_NAME).read_text(encoding="utf-8"))
    assert stored == {"42": [".doc", 77, "08:00:00"]}
    assert FileLibrary(tmp_path, 1).get("42") == info


def test_spare_keys_avoid_existing_entries(tmp_path):
    existing = {str(number): [".x", 1, ""] for number in range(0, 100000, 2)}
    (tmp_path / INDEX_NAME).write_text(json.dumps(existing), encoding="utf-8")
    library = FileLibrary(tmp_path, 20)
    keys = [library.reserve_key() for _ in range(20)]
    assert len(set(keys)) == 20
    assert [int(key) % 2 for key in keys] == [1] * 20


def test_invalid_index_is_treated_as_empty(tmp_path):
    (tmp_path / INDEX_NAME).write_text("not json", encoding="utf-8")
    library = FileLibrary(tmp_path, 1)
    assert "0" not in library
    library.save()
    assert json.loads((tmp_path / INDEX_NAME).read_text(encoding="utf-8")) == {}