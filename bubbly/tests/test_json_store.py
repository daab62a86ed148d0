import json
import os

from bubbly.internal.storage.json_store import GROUPS, HISTORY_DIR, USERS, JsonStore


def test_ensure_layout_creates_empty_documents(data_dir):
    store = JsonStore(data_dir)
    store.ensure_layout()

    assert os.path.isdir(os.path.join(data_dir, HISTORY_DIR))
    for name in (USERS, GROUPS):
        with open(store.path_for(name)) as f:
            assert json.load(f) == []


def test_load_missing_document_is_empty(data_dir):
    assert JsonStore(data_dir).load("nothing_here") == []


def test_save_then_load_from_disk(data_dir):
    JsonStore(data_dir).save(USERS, [{"id": "u1", "username": "alice"}])

    # A fresh store has no cache and must read the file
    assert JsonStore(data_dir).load(USERS) == [{"id": "u1", "username": "alice"}]


def test_loaded_documents_are_copies_of_the_cache(store):
    store.save(USERS, [{"id": "u1", "friends": []}])

    loaded = store.load(USERS)
    loaded[0]["friends"].append({"id": "u2"})
    loaded.append({"id": "u3"})

    assert store.load(USERS) == [{"id": "u1", "friends": []}]


def test_failed_save_keeps_previous_cache(store, monkeypatch):
    store.save(USERS, [{"id": "u1"}])

    def broken_write(path, records):
        raise OSError("disk full")

    monkeypatch.setattr(store, "_write_atomically", broken_write)

    assert store.save(USERS, [{"id": "u1"}, {"id": "u2"}]) is False
    assert store.load(USERS) == [{"id": "u1"}]


def test_corrupt_document_degrades_to_empty(data_dir):
    store = JsonStore(data_dir, cache_enabled=False)
    os.makedirs(data_dir, exist_ok=True)
    with open(store.path_for(USERS), "w") as f:
        f.write("{not json")

    assert store.load(USERS) == []


def test_non_array_document_is_ignored(data_dir):
    store = JsonStore(data_dir, cache_enabled=False)
    with open(store.path_for(GROUPS), "w") as f:
        json.dump({"id": "g1"}, f)

    assert store.load(GROUPS) == []


def test_save_leaves_no_temporary_files(store, data_dir):
    store.save(USERS, [{"id": "u1"}])

    assert not [name for name in os.listdir(data_dir) if name.startswith(".tmp-")]


def test_invalidate_forces_reload(store):
    store.save(USERS, [{"id": "u1"}])
    with open(store.path_for(USERS), "w") as f:
        json.dump([{"id": "edited"}], f)

    assert store.load(USERS) == [{"id": "u1"}]
    store.invalidate(USERS)
    assert store.load(USERS) == [{"id": "edited"}]


def test_initialize_store_script(data_dir, monkeypatch):
    from bubbly.initialize_store import main

    target = os.path.join(data_dir, "fresh")
    monkeypatch.setenv("DATA_DIR", target)

    assert main() == 0
    assert JsonStore(target).load(USERS) == []
    assert os.path.isdir(os.path.join(target, HISTORY_DIR))


def test_cache_keeps_only_the_most_recent_documents(data_dir):
    store = JsonStore(data_dir, max_cached_documents=2)
    for name in ("a", "b", "c"):
        store.save(name, [{"id": name}])

    assert store.cached_documents() == ["b", "c"]

    # Reading an evicted document brings it back from disk
    assert store.load("a") == [{"id": "a"}]
    assert store.cached_documents() == ["c", "a"]


def test_document_locks_are_dropped_after_use(store):
    with store.locked(USERS):
        store.save(USERS, [{"id": "u1"}])
        assert store.load(USERS) == [{"id": "u1"}]
        assert USERS in store._locks

    for name in ("chat_history/room_a", "chat_history/room_b"):
        store.save(name, [])
        store.load(name)

    assert store._locks == {}
    assert store._lock_holders == {}
