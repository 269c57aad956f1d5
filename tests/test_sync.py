"""Tests for snapshot merging and the sync blob codec."""

from __future__ import annotations

import base64
import copy
import json
from typing import List, Optional

import pytest

from evidencekeeper.crypto import aesgcm_decrypt, aesgcm_encrypt, derive_key, random_salt
from evidencekeeper.errors import CorruptBackup, IncorrectPasswordOrCorrupted
from evidencekeeper.store import RecordStore
from evidencekeeper.sync import merge, open_sync_blob, seal_sync_blob, synchronize

from tests.conftest import make_record, make_snapshot

USER_ID = "3f1d2c4e-user"


def _seal_raw(payload) -> str:
    """Seal an arbitrary JSON payload the way cloud clients upload it."""
    salt = random_salt()
    iv, ct = aesgcm_encrypt(derive_key(USER_ID, salt), json.dumps(payload).encode("utf-8"))
    return base64.b64encode(salt + iv + ct).decode("ascii")


def _open_raw(blob: str) -> dict:
    raw = base64.b64decode(blob)
    salt, iv, ct = raw[:16], raw[16:28], raw[28:]
    return json.loads(aesgcm_decrypt(derive_key(USER_ID, salt), iv, ct))


class FakeTransport:
    """In-memory stand-in for the remote blob store."""

    def __init__(self, blob: Optional[str] = None) -> None:
        self.blob = blob
        self.uploads: List[str] = []

    async def download(self) -> Optional[str]:
        return self.blob

    async def upload(self, blob: str) -> None:
        self.uploads.append(blob)
        self.blob = blob


class TestMerge:
    def test_merge_with_itself_is_noop(self, full_record) -> None:
        snapshot = make_snapshot(full_record, make_record("r2"), settings={"pin": "1"})
        assert merge(snapshot, snapshot) == snapshot

    def test_local_wins_on_collision(self) -> None:
        local = make_snapshot(make_record("A", description="X"), make_record("L"))
        remote = make_snapshot(make_record("A", description="Y"), make_record("R"))

        merged = merge(local, remote)

        by_id = {r.id: r for r in merged.records}
        assert by_id["A"].description == "X"
        assert merged.record_ids() == ["A", "L", "R"]

    def test_settings_come_from_local(self) -> None:
        local = make_snapshot(settings={"pin": "local"})
        remote = make_snapshot(settings={"pin": "remote", "userName": "R"})
        assert merge(local, remote).settings == {"pin": "local"}

    def test_remote_duplicates_added_once(self) -> None:
        remote = make_snapshot(make_record("R", description="first"), make_record("R", description="second"))
        merged = merge(make_snapshot(), remote)
        assert [r.description for r in merged.records] == ["first"]

    def test_inputs_untouched(self) -> None:
        local = make_snapshot(make_record("A"))
        remote = make_snapshot(make_record("B"))
        before = (copy.deepcopy(local), copy.deepcopy(remote))
        merge(local, remote)
        assert (local, remote) == before

    def test_accepts_encoded_payloads(self) -> None:
        local = make_snapshot(make_record("A"))
        remote = make_snapshot(make_record("B"))
        merged = merge(local.to_bytes(), remote.to_dict())
        assert merged.record_ids() == ["A", "B"]

    @pytest.mark.parametrize("bad", [b"{not json", {"version": "1.1"}, "[]"])
    def test_undecodable_side_fails_whole_merge(self, bad) -> None:
        local = make_snapshot(make_record("A"))
        with pytest.raises(CorruptBackup):
            merge(local, bad)
        with pytest.raises(CorruptBackup):
            merge(bad, local)


class TestSyncBlob:
    def test_round_trip(self, full_record) -> None:
        snapshot = make_snapshot(full_record)
        assert open_sync_blob(seal_sync_blob(snapshot, USER_ID), USER_ID) == snapshot

    def test_other_user_cannot_open(self) -> None:
        blob = seal_sync_blob(make_snapshot(make_record()), USER_ID)
        with pytest.raises(IncorrectPasswordOrCorrupted):
            open_sync_blob(blob, "someone-else")

    @pytest.mark.parametrize("blob", ["%%%", "AAAA"])
    def test_malformed_blob(self, blob: str) -> None:
        with pytest.raises(CorruptBackup):
            open_sync_blob(blob, USER_ID)

    def test_opens_blob_from_cloud_client(self) -> None:
        payload = {
            "version": "1.0",
            "lastSynced": "2024-04-01T08:15:00.000Z",
            "records": [
                {
                    "id": "c1",
                    "dateTime": "2024-03-30T17:00",
                    "description": "Missed handover",
                    "tags": ["Custody"],
                    "createdAt": "2024-03-30T17:05:00.000Z",
                }
            ],
            "settings": {"pin": "1234"},
        }

        snapshot = open_sync_blob(_seal_raw(payload), USER_ID)

        assert snapshot.export_date == "2024-04-01T08:15:00.000Z"
        assert snapshot.version == "1.1"
        assert snapshot.settings == {"pin": "1234"}
        [record] = snapshot.records
        assert record.id == "c1"
        assert record.date_time == "2024-03-30T17:00"
        assert record.event_log == []

    def test_sealed_payload_names_sync_time(self) -> None:
        snapshot = make_snapshot(make_record("A"))
        payload = _open_raw(seal_sync_blob(snapshot, USER_ID))
        assert payload["lastSynced"] == snapshot.export_date
        assert payload["exportDate"] == snapshot.export_date

    def test_non_object_payload(self) -> None:
        with pytest.raises(CorruptBackup):
            open_sync_blob(_seal_raw([]), USER_ID)


class TestSynchronize:
    @pytest.mark.asyncio
    async def test_first_sync_uploads_local(self, store: RecordStore) -> None:
        await store.put(make_record("L"))
        transport = FakeTransport()

        merged = await synchronize(store, transport, USER_ID)

        assert merged.record_ids() == ["L"]
        assert len(transport.uploads) == 1
        assert open_sync_blob(transport.uploads[0], USER_ID).record_ids() == ["L"]

    @pytest.mark.asyncio
    async def test_merges_remote_into_store(self, store: RecordStore) -> None:
        await store.put(make_record("A", description="local copy"))
        remote = make_snapshot(make_record("A", description="remote copy"), make_record("R"))
        transport = FakeTransport(seal_sync_blob(remote, USER_ID))

        await synchronize(store, transport, USER_ID)

        stored = {r.id: r for r in await store.get_all()}
        assert set(stored) == {"A", "R"}
        assert stored["A"].description == "local copy"
        assert set(open_sync_blob(transport.blob, USER_ID).record_ids()) == {"A", "R"}

    @pytest.mark.asyncio
    async def test_bad_remote_leaves_store_alone(self, store: RecordStore) -> None:
        await store.put(make_record("A"))
        transport = FakeTransport(seal_sync_blob(make_snapshot(make_record("R")), "other-user"))

        with pytest.raises(IncorrectPasswordOrCorrupted):
            await synchronize(store, transport, USER_ID)

        assert [r.id for r in await store.get_all()] == ["A"]
        assert transport.uploads == []

    @pytest.mark.asyncio
    async def test_settings_are_not_imported(self, store: RecordStore) -> None:
        await store.put_setting("recordKeeper_pin", "local")
        remote = make_snapshot(make_record("R"), settings={"pin": "remote"})
        await synchronize(store, FakeTransport(seal_sync_blob(remote, USER_ID)), USER_ID)
        assert await store.get_setting("recordKeeper_pin") == "local"
