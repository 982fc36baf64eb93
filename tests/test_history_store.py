"""Tests for the history assembler and mutator."""

import asyncio
import json
import logging

import pytest
from lzstring import LZString

from conftest import run
from notes_backend import history as history_module
from notes_backend.codec import encode_note_id
from notes_backend.domain import BadRequestError, FOLDER, HistoryEntry, NotFoundError, StorageError
from notes_backend.history import HistoryStore, migrate_legacy_ids, parse_pinned, to_list, to_map

SAMPLE_ID = "0f1e2d3c-4b5a-4978-8695-a4b3c2d1e0f9"


def legacy_id(internal=SAMPLE_ID):
    return LZString().compressToBase64(internal)


def by_id(entries):
    return {e["id"]: e for e in entries}


# =============================================================================
# Reading
# =============================================================================


def test_get_unknown_user_is_not_found(history):
    with pytest.raises(NotFoundError):
        run(history.get("usr_missing"))


def test_new_user_history_is_seeded_from_documents(history, storage, user_id):
    note = storage.add_note(user_id, "Doc", "# Doc", ["x"])
    storage.add_note(user_id, "Folder", "Folder", [], FOLDER)

    entries = run(history.get(user_id))

    assert entries == [{"id": encode_note_id(note.id), "text": "Doc", "time": note.updated_at, "tags": ["x"]}]


def test_stored_history_is_returned_in_order(history, user_id):
    stored = [{"id": "b", "text": "B", "time": 2, "tags": []}, {"id": "a", "text": "A", "time": 1, "tags": []}]
    run(history.replace_all(user_id, stored))
    assert run(history.get(user_id)) == stored


def test_parent_scope_keeps_only_notes_in_folder(history, storage, user_id):
    folder = storage.add_note(user_id, "F", "F", [], FOLDER)
    inside = storage.add_note(user_id, "In", "# In", parent_id=folder.id)
    outside = storage.add_note(user_id, "Out", "# Out")
    run(history.replace_all(user_id, [
        {"id": encode_note_id(inside.id), "time": 1},
        {"id": encode_note_id(outside.id), "time": 2},
    ]))

    scoped = run(history.get(user_id, folder.id))

    assert [e["id"] for e in scoped] == [encode_note_id(inside.id)]
    assert len(run(history.get(user_id))) == 2


# =============================================================================
# Legacy id migration
# =============================================================================


def test_legacy_id_is_migrated_on_read(history, user_id):
    old = legacy_id()
    assert len(old) > 47
    run(history.replace_all(user_id, [{"id": old, "time": 50, "tags": ["t"]}]))

    entries = run(history.get(user_id))

    assert entries == [{"id": encode_note_id(SAMPLE_ID), "text": "", "time": 50, "tags": ["t"]}]


def test_undecodable_legacy_id_is_kept_with_warning(history, user_id, caplog):
    caplog.set_level(logging.WARNING, logger="notes_backend.history")
    broken = "!" * 50
    run(history.replace_all(user_id, [{"id": broken, "time": 50}]))

    entries = run(history.get(user_id))

    assert [e["id"] for e in entries] == [broken]
    warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
    assert any(broken in r.getMessage() for r in warnings)


def test_legacy_id_decoding_to_non_uuid_is_kept():
    not_a_uuid = LZString().compressToBase64("this is definitely not a note id at all")
    entries = [HistoryEntry(not_a_uuid, time=1)]
    migrate_legacy_ids(entries)
    assert entries[0].id == not_a_uuid


def test_garbage_legacy_id_is_a_warning_not_an_error(caplog):
    caplog.set_level(logging.WARNING, logger="notes_backend.history")
    entries = [HistoryEntry("y" * 60, time=1)]

    migrate_legacy_ids(entries)

    assert entries[0].id == "y" * 60
    levels = [r.levelno for r in caplog.records]
    assert logging.WARNING in levels
    assert logging.ERROR not in levels


def test_unexpected_migration_error_is_logged_and_skipped(monkeypatch, caplog):
    def explode(value):
        raise RuntimeError("boom")

    monkeypatch.setattr(history_module, "encode_note_id", explode)
    caplog.set_level(logging.ERROR, logger="notes_backend.history")
    entries = [HistoryEntry(legacy_id(), time=1), HistoryEntry(legacy_id(), time=2)]

    migrate_legacy_ids(entries)

    assert [e.id for e in entries] == [legacy_id(), legacy_id()]
    assert len([r for r in caplog.records if r.levelno == logging.ERROR]) == 2


def test_migration_is_idempotent():
    entries = [
        HistoryEntry(legacy_id(), time=1),
        HistoryEntry(encode_note_id(SAMPLE_ID), time=2),
        HistoryEntry("!" * 50, time=3),
    ]
    migrate_legacy_ids(entries)
    once = [e.to_dict() for e in entries]
    migrate_legacy_ids(entries)
    assert [e.to_dict() for e in entries] == once


def test_short_ids_skip_migration(monkeypatch):
    calls = []

    def record(value):
        calls.append(value)
        return SAMPLE_ID

    monkeypatch.setattr(history_module, "decompress_legacy_id", record)
    migrate_legacy_ids([HistoryEntry("a" * 47), HistoryEntry(encode_note_id(SAMPLE_ID))])
    assert calls == []

    migrate_legacy_ids([HistoryEntry("a" * 48)])
    assert calls == ["a" * 48]


def test_map_and_list_forms_agree():
    entries = [HistoryEntry("a", "A", 1, ["x"]), HistoryEntry("b", "B", 2, [], pinned=True)]
    as_list = to_list(to_map(entries))
    assert as_list == [e.to_dict() for e in entries]
    assert as_list[1]["pinned"] is True
    assert "pinned" not in as_list[0]


# =============================================================================
# Upsert on access
# =============================================================================


def test_upsert_updates_existing_entry(history, user_id):
    run(history.replace_all(user_id, [{"id": "abc", "time": 100}]))

    run(history.upsert_on_access(user_id, "abc", "# Title\n#tag1", 200))

    assert run(history.get(user_id)) == [{"id": "abc", "text": "Title", "tags": ["tag1"], "time": 200}]


def test_upsert_leaves_unrelated_entries_alone(history, user_id):
    other = {"id": "other", "text": "Other", "time": 5, "tags": ["keep"], "pinned": True}
    run(history.replace_all(user_id, [other, {"id": "abc", "time": 1}]))

    run(history.upsert_on_access(user_id, "new", "# New", 300))

    entries = by_id(run(history.get(user_id)))
    assert entries["other"] == other
    assert entries["abc"]["time"] == 1
    assert entries["new"] == {"id": "new", "text": "New", "time": 300, "tags": []}


def test_upsert_defaults_time_to_now(history, user_id, monkeypatch):
    monkeypatch.setattr(history_module, "now_ms", lambda: 123456)
    run(history.replace_all(user_id, []))

    run(history.upsert_on_access(user_id, "abc", "# T"))

    assert run(history.get(user_id))[0]["time"] == 123456


@pytest.mark.parametrize("args", [
    (None, "abc", "# T"),
    ("USER", None, "# T"),
    ("USER", "abc", None),
])
def test_upsert_with_missing_argument_is_a_no_op(history, user_id, args):
    run(history.replace_all(user_id, [{"id": "abc", "time": 1}]))
    args = tuple(user_id if a == "USER" else a for a in args)

    run(history.upsert_on_access(*args, 999))

    assert run(history.get(user_id)) == [{"id": "abc", "text": "", "time": 1, "tags": []}]


def test_upsert_for_unknown_user_does_nothing(history):
    run(history.upsert_on_access("usr_missing", "abc", "# T", 1))


def test_upsert_swallows_storage_errors(history, user_id, auth, monkeypatch, caplog):
    run(history.replace_all(user_id, [{"id": "abc", "text": "Old", "time": 1}]))
    before = run(history.get(user_id))

    def fail(*args):
        raise StorageError("disk full")

    monkeypatch.setattr(auth, "set_history", fail)
    caplog.set_level(logging.ERROR, logger="notes_backend.history")
    run(history.upsert_on_access(user_id, "abc", "# New", 2))

    assert run(history.get(user_id)) == before
    errors = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert any("update history failed" in r.getMessage() and "disk full" in r.getMessage() for r in errors)


# =============================================================================
# Pinning and deletion
# =============================================================================


def test_set_pinned_true_then_false(history, user_id):
    run(history.replace_all(user_id, [{"id": "abc", "time": 1}]))

    run(history.set_pinned(user_id, "abc", "true"))
    assert run(history.get(user_id))[0]["pinned"] is True

    run(history.set_pinned(user_id, "abc", "false"))
    assert run(history.get(user_id))[0]["pinned"] is False


def test_set_pinned_rejects_unknown_token(history, user_id):
    run(history.replace_all(user_id, [{"id": "abc", "time": 1}]))
    before = run(history.get(user_id))

    with pytest.raises(BadRequestError):
        run(history.set_pinned(user_id, "abc", "maybe"))

    assert run(history.get(user_id)) == before


def test_set_pinned_missing_entry_or_user(history, user_id):
    run(history.replace_all(user_id, []))
    with pytest.raises(NotFoundError):
        run(history.set_pinned(user_id, "abc", "true"))
    with pytest.raises(NotFoundError):
        run(history.set_pinned("usr_missing", "abc", "true"))


def test_parse_pinned_accepts_booleans():
    assert parse_pinned(True) is True
    assert parse_pinned("false") is False
    with pytest.raises(BadRequestError):
        parse_pinned("TRUE")


def test_delete_one(history, user_id):
    run(history.replace_all(user_id, [{"id": "a", "time": 1}, {"id": "b", "time": 2}]))

    run(history.delete_one(user_id, "a"))

    assert [e["id"] for e in run(history.get(user_id))] == ["b"]


def test_delete_one_unknown_user(history):
    with pytest.raises(NotFoundError):
        run(history.delete_one("usr_missing", "a"))


def test_delete_all(history, user_id, auth):
    run(history.replace_all(user_id, [{"id": "a", "time": 1}]))

    run(history.delete_all(user_id))

    assert run(history.get(user_id)) == []
    assert json.loads(auth.find_user(user_id).history) == []


def test_replace_all_discards_previous_state(history, user_id):
    run(history.replace_all(user_id, [{"id": "a", "time": 1, "pinned": True}]))
    run(history.replace_all(user_id, [{"id": "b", "time": 2}]))
    assert [e["id"] for e in run(history.get(user_id))] == ["b"]


# =============================================================================
# Concurrency
# =============================================================================


def test_serialized_writes_keep_concurrent_upserts(auth, storage, user_id):
    store = HistoryStore(auth, storage, serialize_writes=True)
    run(store.replace_all(user_id, []))

    async def access_many():
        await asyncio.gather(*(
            store.upsert_on_access(user_id, f"n{i}", f"# Note {i}", i) for i in range(5)
        ))

    run(access_many())

    entries = by_id(run(store.get(user_id)))
    assert sorted(entries) == [f"n{i}" for i in range(5)]
    assert entries["n3"] == {"id": "n3", "text": "Note 3", "time": 3, "tags": []}
    assert store._locks == {} and store._waiting == {}


def test_uppercase_legacy_uuid_is_migrated_to_lowercase(history, user_id):
    run(history.replace_all(user_id, [{"id": legacy_id(SAMPLE_ID.upper()), "time": 5}]))

    entries = run(history.get(user_id))

    assert [e["id"] for e in entries] == [encode_note_id(SAMPLE_ID)]


def test_stored_pinned_tokens_are_read_as_booleans(history, user_id):
    run(history.replace_all(user_id, [
        {"id": "a", "time": 1, "pinned": "false"},
        {"id": "b", "time": 2, "pinned": "true"},
        {"id": "c", "time": 3, "pinned": "sometimes"},
    ]))

    entries = by_id(run(history.get(user_id)))

    assert entries["a"]["pinned"] is False
    assert entries["b"]["pinned"] is True
    assert "pinned" not in entries["c"]
