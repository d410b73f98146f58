from hostcore.store import APPLICATIONS, JsonRecordStore


def test_insert_and_find_in_memory():
    store = JsonRecordStore()
    store.insert(APPLICATIONS, {"name": "a", "port": 3001, "owner": "u1"})
    store.insert(APPLICATIONS, {"name": "b", "port": 3002, "owner": "u1"})
    store.insert(APPLICATIONS, {"name": "c", "port": 3003, "owner": "u2"})

    assert store.find_one(APPLICATIONS, {"name": "b"})["port"] == 3002
    assert store.find_one(APPLICATIONS, {"name": "zzz"}) is None
    assert len(store.find_many(APPLICATIONS)) == 3
    assert [r["name"] for r in store.find_many(APPLICATIONS, {"owner": "u1"})] == ["a", "b"]
    assert store.count(APPLICATIONS, lambda r: r["port"] > 3001) == 2
    assert store.count("other") == 0


def test_returned_records_are_copies():
    store = JsonRecordStore()
    store.insert(APPLICATIONS, {"name": "a", "meta": {"x": 1}})

    found = store.find_one(APPLICATIONS, {"name": "a"})
    found["meta"]["x"] = 99

    assert store.find_one(APPLICATIONS, {"name": "a"})["meta"]["x"] == 1


def test_update_and_none_removes_field():
    store = JsonRecordStore()
    store.insert(APPLICATIONS, {"name": "a", "status": "running", "pid": 10})

    assert store.update(APPLICATIONS, {"name": "a"}, {"status": "stopped", "pid": None}) == 1
    record = store.find_one(APPLICATIONS, {"name": "a"})
    assert record["status"] == "stopped"
    assert "pid" not in record
    assert store.update(APPLICATIONS, {"name": "missing"}, {"status": "x"}) == 0


def test_delete():
    store = JsonRecordStore()
    store.insert(APPLICATIONS, {"name": "a"})
    store.insert(APPLICATIONS, {"name": "b"})

    assert store.delete(APPLICATIONS, {"name": "a"}) == 1
    assert store.delete(APPLICATIONS, {"name": "a"}) == 0
    assert [r["name"] for r in store.find_many(APPLICATIONS)] == ["b"]


def test_persistence_roundtrip(tmp_path):
    path = tmp_path / "data" / "records.json"
    store = JsonRecordStore(path)
    store.insert(APPLICATIONS, {"name": "a", "port": 3001})
    store.update(APPLICATIONS, {"name": "a"}, {"status": "stopped"})

    reloaded = JsonRecordStore(path)
    assert reloaded.find_one(APPLICATIONS, {"name": "a"}) == {"name": "a", "port": 3001, "status": "stopped"}


def test_corrupt_file_starts_empty(tmp_path):
    path = tmp_path / "records.json"
    path.write_text("[[[")
    store = JsonRecordStore(path)
    assert store.count(APPLICATIONS) == 0
