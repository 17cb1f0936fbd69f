"""Tests for the storage backends (in-memory, JSON file cache, Google Sheets)."""

import asyncio
import json
import re
from collections import defaultdict

import pytest

from xpenza.services.storage import (
    BatchCommitError,
    BatchOperation,
    GoogleSheetsDocumentStore,
    InMemoryDocumentStore,
    JsonFileCache,
    NotFoundError,
    StorageError,
    Subscription,
)


class TestSubscription:
    """Cancellation handle."""

    def test_cancel_before_attach(self):
        """Attaching to a cancelled handle unsubscribes immediately."""
        calls = []
        subscription = Subscription()
        subscription.cancel()

        subscription.attach(lambda: calls.append("stop"))

        assert calls == ["stop"]
        assert not subscription.active


class TestInMemoryDocumentStore:
    """The fake remote store used throughout the tests."""

    @pytest.mark.asyncio
    async def test_create_and_filter(self):
        """Equality filters select matching documents."""
        remote = InMemoryDocumentStore()
        first = await remote.create("things", {"owner_id": "a", "n": 1})
        await remote.create("things", {"owner_id": "b", "n": 2})

        documents = await remote.list_documents("things", {"owner_id": "a"})

        assert [d.id for d in documents] == [first]
        assert documents[0].data == {"owner_id": "a", "n": 1}

    @pytest.mark.asyncio
    async def test_watch_delivers_initial_and_later_snapshots(self):
        """Watchers see a full snapshot on start and on every write."""
        remote = InMemoryDocumentStore()
        snapshots = []
        subscription = remote.watch("things", {"owner_id": "a"}, snapshots.append)

        doc_id = await remote.create("things", {"owner_id": "a"})
        await remote.update("things", doc_id, {"n": 3})

        assert [len(s) for s in snapshots] == [0, 1, 1]
        assert snapshots[-1][0].data["n"] == 3

        subscription.cancel()
        await remote.delete("things", doc_id)
        assert len(snapshots) == 3
        assert remote.unsubscribe_count == 1

    @pytest.mark.asyncio
    async def test_update_missing_document(self):
        """Updating an unknown document raises NotFoundError."""
        remote = InMemoryDocumentStore()

        with pytest.raises(NotFoundError):
            await remote.update("things", "nope", {"n": 1})

    @pytest.mark.asyncio
    async def test_batch_is_all_or_nothing(self):
        """One bad operation leaves every document untouched."""
        remote = InMemoryDocumentStore()
        doc_id = await remote.create("things", {"n": 1})

        with pytest.raises(BatchCommitError):
            await remote.commit_batch([
                BatchOperation.delete("things", doc_id),
                BatchOperation.update("things", "missing", {"n": 2}),
            ])

        assert [d.id for d in remote.documents("things")] == [doc_id]

    @pytest.mark.asyncio
    async def test_fail_next_is_consumed_once(self):
        """Injected failures hit exactly one matching call."""
        remote = InMemoryDocumentStore()
        remote.fail_next("create", "things")

        with pytest.raises(StorageError):
            await remote.create("things", {})
        assert await remote.create("things", {})


class TestJsonFileCache:
    """On-disk cache."""

    def test_round_trip(self, tmp_path):
        """Values survive a new cache instance on the same directory."""
        JsonFileCache(tmp_path / "cache").set_item("state", '{"a": 1}')

        cache = JsonFileCache(tmp_path / "cache")

        assert cache.get_item("state") == '{"a": 1}'
        assert cache.get_item("missing") is None

    def test_remove(self, tmp_path):
        """Removing is idempotent."""
        cache = JsonFileCache(tmp_path)
        cache.set_item("state", "{}")

        cache.remove_item("state")
        cache.remove_item("state")

        assert cache.get_item("state") is None

    def test_rejects_unsafe_keys(self, tmp_path):
        """Keys cannot escape the cache directory."""
        cache = JsonFileCache(tmp_path)

        with pytest.raises(StorageError):
            cache.set_item("../outside", "{}")


class FakeWorksheet:
    def __init__(self):
        self.rows = [["id", "data_json"]]

    def get_all_values(self):
        return [list(row) for row in self.rows]

    def append_row(self, row, value_input_option=None):
        self.rows.append(list(row))

    def update(self, values, range_name):
        row = int(re.match(r"A(\d+):", range_name).group(1))
        self.rows[row - 1] = list(values[0])

    def delete_rows(self, index):
        del self.rows[index - 1]


class FakeSpreadsheet:
    def __init__(self, sheets):
        self._sheets = sheets
        self.batch_calls = 0

    def values_batch_update(self, body):
        self.batch_calls += 1
        for entry in body["data"]:
            title = entry["range"].split("!")[0].strip("'")
            sheet = self._sheets[title]
            for offset, row in enumerate(entry["values"]):
                sheet.rows[1 + offset] = list(row)


class FakeSheetsClient:
    def __init__(self):
        self.sheets = defaultdict(FakeWorksheet)
        self.spreadsheet = FakeSpreadsheet(self.sheets)

    def get_collection_sheet(self, collection):
        return self.sheets[collection]

    def get_spreadsheet(self):
        return self.spreadsheet


class BrokenWorksheet(FakeWorksheet):
    def get_all_values(self):
        raise RuntimeError("quota exceeded")


class TestGoogleSheetsDocumentStore:
    """Sheets backend against fake worksheets."""

    @pytest.mark.asyncio
    async def test_create_and_list(self):
        """Documents are stored as [id, data_json] rows."""
        client = FakeSheetsClient()
        remote = GoogleSheetsDocumentStore(client=client, poll_interval=0.05)

        doc_id = await remote.create("ledgers", {"owner_id": "u", "name": "Main"})
        await remote.create("ledgers", {"owner_id": "v", "name": "Other"})

        row = client.sheets["ledgers"].rows[1]
        assert row[0] == doc_id
        assert json.loads(row[1]) == {"name": "Main", "owner_id": "u"}
        documents = await remote.list_documents("ledgers", {"owner_id": "u"})
        assert [d.id for d in documents] == [doc_id]

    @pytest.mark.asyncio
    async def test_update_merges_fields(self):
        """Only the given fields change."""
        client = FakeSheetsClient()
        remote = GoogleSheetsDocumentStore(client=client, poll_interval=0.05)
        doc_id = await remote.create("transactions", {"title": "a", "amount": "1"})

        await remote.update("transactions", doc_id, {"title": "b"})

        documents = await remote.list_documents("transactions")
        assert documents[0].data == {"title": "b", "amount": "1"}

        with pytest.raises(NotFoundError):
            await remote.update("transactions", "missing", {"title": "c"})

    @pytest.mark.asyncio
    async def test_delete(self):
        """Deleted rows are gone; missing ids are ignored."""
        client = FakeSheetsClient()
        remote = GoogleSheetsDocumentStore(client=client, poll_interval=0.05)
        doc_id = await remote.create("transactions", {"title": "a"})

        await remote.delete("transactions", doc_id)
        await remote.delete("transactions", doc_id)

        assert await remote.list_documents("transactions") == []

    @pytest.mark.asyncio
    async def test_batch_is_one_request(self):
        """A cascade touching two collections is written in one call."""
        client = FakeSheetsClient()
        remote = GoogleSheetsDocumentStore(client=client, poll_interval=0.05)
        ledger = await remote.create("ledgers", {"name": "A"})
        tx = await remote.create("transactions", {"ledger_id": ledger})
        kept = await remote.create("transactions", {"ledger_id": "B"})

        await remote.commit_batch([
            BatchOperation.delete("transactions", tx),
            BatchOperation.update("transactions", kept, {"note": "kept"}),
            BatchOperation.delete("ledgers", ledger),
        ])

        assert client.spreadsheet.batch_calls == 1
        assert await remote.list_documents("ledgers") == []
        remaining = await remote.list_documents("transactions")
        assert [d.id for d in remaining] == [kept]
        assert remaining[0].data["note"] == "kept"

    @pytest.mark.asyncio
    async def test_batch_with_missing_update_target(self):
        """Nothing is written when an update target is missing."""
        client = FakeSheetsClient()
        remote = GoogleSheetsDocumentStore(client=client, poll_interval=0.05)
        doc_id = await remote.create("transactions", {"title": "a"})

        with pytest.raises(BatchCommitError):
            await remote.commit_batch([
                BatchOperation.delete("transactions", doc_id),
                BatchOperation.update("transactions", "missing", {}),
            ])

        assert client.spreadsheet.batch_calls == 0
        assert len(await remote.list_documents("transactions")) == 1

    @pytest.mark.asyncio
    async def test_api_errors_become_storage_errors(self):
        """Backend exceptions never leak past the interface."""
        client = FakeSheetsClient()
        client.sheets["transactions"] = BrokenWorksheet()
        remote = GoogleSheetsDocumentStore(client=client, poll_interval=0.05)

        with pytest.raises(StorageError):
            await remote.list_documents("transactions")

    @pytest.mark.asyncio
    async def test_watch_polls_and_wakes_on_writes(self):
        """A watch gets the initial snapshot and one after a local write."""
        client = FakeSheetsClient()
        remote = GoogleSheetsDocumentStore(client=client, poll_interval=0.05)
        snapshots = []
        subscription = remote.watch("ledgers", {"owner_id": "u"}, snapshots.append)

        for _ in range(100):
            if snapshots:
                break
            await asyncio.sleep(0.01)
        assert snapshots == [[]]

        await remote.create("ledgers", {"owner_id": "u"})
        for _ in range(100):
            if len(snapshots) > 1:
                break
            await asyncio.sleep(0.01)

        assert len(snapshots[-1]) == 1
        subscription.cancel()
        await asyncio.sleep(0)

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_stop_the_watch(self):
        """A callback that raises is logged and later changes still arrive."""
        client = FakeSheetsClient()
        remote = GoogleSheetsDocumentStore(client=client, poll_interval=0.05)
        snapshots = []

        def on_snapshot(documents):
            snapshots.append(documents)
            if len(snapshots) == 1:
                raise RuntimeError("listener bug")

        subscription = remote.watch("ledgers", {"owner_id": "u"}, on_snapshot)
        for _ in range(100):
            if snapshots:
                break
            await asyncio.sleep(0.01)

        await remote.create("ledgers", {"owner_id": "u"})
        for _ in range(100):
            if len(snapshots) > 1:
                break
            await asyncio.sleep(0.01)

        assert len(snapshots) == 2
        assert len(snapshots[-1]) == 1
        subscription.cancel()
        await asyncio.sleep(0)
