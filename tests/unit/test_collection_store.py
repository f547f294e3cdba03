"""
Unit tests for the audited collection store.

Tests cover:
- Record CRUD with validation
- Audit entries written with each mutation
- Change events published after commit
- Capture, dump and wholesale replace
- Concurrent updates on one record
"""

import asyncio
import tempfile

import pytest
import pytest_asyncio

from backend.inventdb_server.errors import NotFoundError, ValidationFailedError
from backend.inventdb_server.notify.notifier import ChangeNotifier
from backend.inventdb_server.store.collection_store import (
    CollectionStore,
    StoreImage,
    image_from_data,
)


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def notifier():
    return ChangeNotifier(queue_size=100)


@pytest_asyncio.fixture
async def store(data_dir, notifier):
    store = CollectionStore(data_dir, notifier=notifier)
    await store.initialize()
    yield store
    await store.close()


def drain(sub):
    events = []
    while sub.pending():
        events.append(sub._queue.get_nowait())
    return events


class TestCreate:
    """Tests for CollectionStore.create."""

    @pytest.mark.asyncio
    async def test_create_assigns_id_and_timestamps(self, store):
        record = await store.create("devices", {"name": "PC-1", "model": "X1"}, actor="alice")

        assert record.id
        assert record.created_at == record.updated_at
        assert record.created_at > 0
        assert record.data["status"] == "storage"

        fetched = await store.get("devices", record.id)
        assert fetched.data == record.data

    @pytest.mark.asyncio
    async def test_create_ignores_reserved_fields(self, store):
        record = await store.create(
            "employees",
            {"id": "mine", "created_at": 1, "name": "Ann", "department": "IT"},
        )
        assert record.id != "mine"
        assert "id" not in record.data
        assert record.created_at != 1

    @pytest.mark.asyncio
    async def test_create_missing_required_field(self, store):
        with pytest.raises(ValidationFailedError) as exc_info:
            await store.create("devices", {"name": "PC-1"})
        assert any("model" in e for e in exc_info.value.errors)
        assert await store.count("devices") == 0

    @pytest.mark.asyncio
    async def test_create_unknown_field(self, store):
        with pytest.raises(ValidationFailedError):
            await store.create("employees", {"name": "Ann", "department": "IT", "age": 30})

    @pytest.mark.asyncio
    async def test_create_unknown_collection(self, store):
        with pytest.raises(ValidationFailedError):
            await store.create("printers", {"name": "P"})

    @pytest.mark.asyncio
    async def test_create_non_object_payload(self, store):
        with pytest.raises(ValidationFailedError, match="JSON object"):
            await store.create("devices", ["PC-1"])

    @pytest.mark.asyncio
    async def test_create_writes_one_audit_entry(self, store):
        record = await store.create("devices", {"name": "PC-1", "model": "X1"}, actor="alice")
        [entry] = await store.audit.query("devices", record.id)
        assert entry.action == "create"
        assert entry.user == "alice"
        assert entry.field_name is None
        assert entry.new_value == record.to_dict()

    @pytest.mark.asyncio
    async def test_create_publishes_event(self, store, notifier):
        sub = notifier.subscribe()
        record = await store.create("devices", {"name": "PC-1", "model": "X1"})
        [event] = drain(sub)
        assert event.collection == "devices"
        assert event.action == "create"
        assert event.record_id == record.id

    @pytest.mark.asyncio
    async def test_failed_create_publishes_nothing(self, store, notifier):
        sub = notifier.subscribe()
        with pytest.raises(ValidationFailedError):
            await store.create("devices", {})
        assert drain(sub) == []

    @pytest.mark.asyncio
    async def test_store_version_increments(self, store):
        before = await store.store_version()
        await store.create("employees", {"name": "Ann", "department": "IT"})
        assert await store.store_version() == before + 1


class TestReads:
    """Tests for get, list and count."""

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        with pytest.raises(NotFoundError):
            await store.get("devices", "nope")

    @pytest.mark.asyncio
    async def test_list_newest_first(self, store):
        first = await store.create("employees", {"name": "A", "department": "IT"})
        second = await store.create("employees", {"name": "B", "department": "IT"})
        records = await store.list("employees")
        assert [r.id for r in records] == [second.id, first.id]

    @pytest.mark.asyncio
    async def test_collections_are_independent(self, store):
        await store.create("employees", {"name": "A", "department": "IT"})
        assert await store.list("devices") == []
        assert await store.count("employees") == 1

    @pytest.mark.asyncio
    async def test_get_stats(self, store):
        await store.create("employees", {"name": "A", "department": "IT"})
        stats = await store.get_stats()
        assert stats["employees"] == 1
        assert stats["devices"] == 0
        assert stats["history"] == 1


class TestUpdate:
    """Tests for CollectionStore.update."""

    @pytest_asyncio.fixture
    async def device(self, store):
        return await store.create(
            "devices", {"name": "PC-1", "model": "X1", "user": "alice"}, actor="admin"
        )

    @pytest.mark.asyncio
    async def test_update_changes_fields(self, store, device):
        updated = await store.update("devices", device.id, {"user": "bob"}, actor="admin")
        assert updated.data["user"] == "bob"
        assert updated.data["name"] == "PC-1"
        assert updated.updated_at >= device.updated_at
        assert updated.created_at == device.created_at

    @pytest.mark.asyncio
    async def test_update_writes_entry_per_changed_field(self, store, device):
        await store.update(
            "devices", device.id, {"user": "bob", "status": "in_use", "name": "PC-1"}, actor="eve"
        )
        entries = await store.audit.query("devices", device.id)
        updates = [e for e in entries if e.action == "update"]
        assert {(e.field_name, e.old_value, e.new_value) for e in updates} == {
            ("user", "alice", "bob"),
            ("status", "storage", "in_use"),
        }
        assert all(e.user == "eve" for e in updates)

    @pytest.mark.asyncio
    async def test_noop_update_returns_current(self, store, notifier, device):
        sub = notifier.subscribe()
        before = await store.store_version()
        result = await store.update("devices", device.id, {"user": "alice", "office": ""})
        assert result.data == device.data
        assert await store.store_version() == before
        assert len(await store.audit.query("devices", device.id)) == 1
        assert drain(sub) == []

    @pytest.mark.asyncio
    async def test_noop_update_rejected_when_configured(self, data_dir):
        store = CollectionStore(data_dir, reject_noop_updates=True)
        await store.initialize()
        record = await store.create("employees", {"name": "A", "department": "IT"})
        with pytest.raises(ValidationFailedError, match="changes no fields"):
            await store.update("employees", record.id, {"name": "A"})

    @pytest.mark.asyncio
    async def test_update_missing_record(self, store):
        with pytest.raises(NotFoundError):
            await store.update("devices", "nope", {"user": "bob"})

    @pytest.mark.asyncio
    async def test_update_invalid_enum(self, store, device):
        with pytest.raises(ValidationFailedError):
            await store.update("devices", device.id, {"status": "lost"})
        assert (await store.get("devices", device.id)).data["status"] == "storage"

    @pytest.mark.asyncio
    async def test_update_cannot_blank_required_field(self, store, device):
        with pytest.raises(ValidationFailedError):
            await store.update("devices", device.id, {"name": ""})

    @pytest.mark.asyncio
    async def test_update_ignores_reserved_fields(self, store, device):
        updated = await store.update("devices", device.id, {"id": "other", "user": "bob"})
        assert updated.id == device.id

    @pytest.mark.asyncio
    async def test_concurrent_updates_diff_against_committed_state(self, store, device):
        await asyncio.gather(
            store.update("devices", device.id, {"user": "bob"}, actor="a"),
            store.update("devices", device.id, {"user": "carol"}, actor="b"),
        )
        entries = [
            e for e in await store.audit.query("devices", device.id) if e.action == "update"
        ]
        oldest, newest = entries[-1], entries[0]
        assert oldest.old_value == "alice"
        assert newest.old_value == oldest.new_value
        final = await store.get("devices", device.id)
        assert final.data["user"] == newest.new_value


class TestDelete:
    """Tests for CollectionStore.delete."""

    @pytest.mark.asyncio
    async def test_delete_removes_and_audits(self, store, notifier):
        record = await store.create("employees", {"name": "A", "department": "IT"})
        sub = notifier.subscribe()

        deleted = await store.delete("employees", record.id, actor="admin")
        assert deleted.id == record.id

        with pytest.raises(NotFoundError):
            await store.get("employees", record.id)

        entry = (await store.audit.query("employees", record.id))[0]
        assert entry.action == "delete"
        assert entry.old_value["name"] == "A"
        assert entry.user == "admin"

        [event] = drain(sub)
        assert event.action == "delete"

    @pytest.mark.asyncio
    async def test_delete_missing(self, store):
        with pytest.raises(NotFoundError):
            await store.delete("employees", "nope")


class TestCaptureAndReplace:
    """Tests for capture, dump and replace_all."""

    @pytest.mark.asyncio
    async def test_dump_contains_every_collection_and_history(self, store):
        await store.create("employees", {"name": "A", "department": "IT"})
        dump = await store.dump()
        assert set(dump) == {
            "devices",
            "networkDevices",
            "storageItems",
            "employees",
            "mfu",
            "serverEquipment",
            "history",
        }
        assert dump["employees"][0]["name"] == "A"
        assert len(dump["history"]) == 1

    @pytest.mark.asyncio
    async def test_replace_all_installs_image(self, store, notifier):
        await store.create("employees", {"name": "Old", "department": "IT"})
        image, missing = image_from_data(
            {
                "employees": [{"id": 7, "name": "New", "department": "HR", "created_at": 100}],
                "history": [
                    {
                        "seq": 1,
                        "collection": "employees",
                        "record_id": "7",
                        "action": "create",
                        "user": "bob",
                        "timestamp": 100,
                    }
                ],
            }
        )
        assert "devices" in missing
        sub = notifier.subscribe()

        version = await store.replace_all(image, action="replace")

        [record] = await store.list("employees")
        assert record.id == "7"
        assert record.data == {"name": "New", "department": "HR"}
        assert record.created_at == 100
        assert [e.user for e in await store.audit.query()] == ["bob"]
        assert await store.store_version() == version

        [event] = drain(sub)
        assert event.collection == "all"
        assert event.action == "replace"

    @pytest.mark.asyncio
    async def test_replace_all_keeps_list_order_for_equal_timestamps(self, store, monkeypatch):
        monkeypatch.setattr(
            "backend.inventdb_server.store.collection_store._now_ms", lambda: 5000
        )
        for name in ("A", "B", "C"):
            await store.create("employees", {"name": name, "department": "IT"})
        before = [r.to_dict() for r in await store.list("employees")]
        assert [r["name"] for r in before] == ["C", "B", "A"]

        await store.replace_all(await store.capture())

        assert [r.to_dict() for r in await store.list("employees")] == before

    @pytest.mark.asyncio
    async def test_capture_without_history(self, store):
        await store.create("employees", {"name": "A", "department": "IT"})
        image = await store.capture(include_history=False)
        assert len(image.collections["employees"]) == 1
        assert image.history == []

    @pytest.mark.asyncio
    async def test_writers_wait_for_replace_to_commit(self, store):
        record = await store.create("employees", {"name": "A", "department": "IT"})
        image = await store.capture()
        image.collections["employees"][0]["name"] = "Restored"

        order = []

        async def write():
            await store.update("employees", record.id, {"name": "Written"})
            order.append("update")

        async with store.gate.exclusive():
            writer = asyncio.create_task(write())
            await asyncio.sleep(0.05)
            assert not writer.done()
            order.append("gate released")
        await writer
        assert order == ["gate released", "update"]

        replace = asyncio.create_task(store.replace_all(image))
        writer = asyncio.create_task(write())
        await asyncio.gather(replace, writer)
        # the update ran after the replace committed, so it diffed against "Restored"
        assert (await store.get("employees", record.id)).data["name"] == "Written"
        [entry] = await store.audit.query("employees", record.id, limit=1)
        assert entry.old_value == "Restored"

    @pytest.mark.asyncio
    async def test_replace_all_rolls_back_on_failure(self, store):
        record = await store.create("employees", {"name": "A", "department": "IT"})
        bad = StoreImage(collections={"employees": [{"name": "no id"}]})
        with pytest.raises(KeyError):
            await store.replace_all(bad)
        assert (await store.get("employees", record.id)).data["name"] == "A"
        assert not store.gate.is_exclusive


class TestImageFromData:
    """Tests for dump structure checks."""

    def test_non_object_raises(self):
        with pytest.raises(ValueError):
            image_from_data([])

    def test_collection_must_be_list(self):
        with pytest.raises(ValueError, match="expected a list"):
            image_from_data({"devices": {"a": 1}})

    def test_duplicate_ids_raise(self):
        with pytest.raises(ValueError, match="duplicate"):
            image_from_data({"employees": [{"id": "1"}, {"id": 1}]})

    def test_missing_ids_are_generated(self):
        image, _ = image_from_data({"employees": [{"name": "A"}]})
        assert image.collections["employees"][0]["id"]

    def test_missing_keys_reported(self):
        image, missing = image_from_data({"devices": []})
        assert "employees" in missing
        assert "history" in missing
        assert image.history == []
