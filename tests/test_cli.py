"""Tests for the click command line."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from evidencekeeper.backends import SqliteBackend
from evidencekeeper.backup import read_backup_file, restore_encrypted_backup
from evidencekeeper.cli import main
from evidencekeeper.store import RecordStore

from tests.conftest import make_record

PASSWORD = "correct-horse"


@pytest.fixture
def runner(tmp_path: Path, monkeypatch) -> CliRunner:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.delenv("EVIDENCEKEEPER_DB", raising=False)
    monkeypatch.delenv("EVIDENCEKEEPER_PASSWORD", raising=False)
    return CliRunner()


def seed(path: Path, *records) -> None:
    async def _seed() -> None:
        async with RecordStore(SqliteBackend(str(path))) as store:
            for record in records:
                await store.put(record)

    asyncio.run(_seed())


def stored_ids(path: Path):
    async def _ids():
        async with RecordStore(SqliteBackend(str(path))) as store:
            return [r.id for r in await store.get_all()]

    return asyncio.run(_ids())


def test_export_then_import(runner: CliRunner, tmp_path: Path) -> None:
    src, dst = tmp_path / "src.sqlite3", tmp_path / "dst.sqlite3"
    backup = tmp_path / "out.encrypted"
    seed(src, make_record("a"), make_record("b"))
    seed(dst, make_record("stale"))

    result = runner.invoke(main, ["--db", str(src), "export", str(backup), "--password", PASSWORD])
    assert result.exit_code == 0, result.output
    assert "Backup written to" in result.output
    assert restore_encrypted_backup(PASSWORD, read_backup_file(backup)).record_ids() == ["a", "b"]

    result = runner.invoke(
        main, ["--db", str(dst), "import", str(backup), "--password", PASSWORD, "--yes"]
    )
    assert result.exit_code == 0, result.output
    assert "Restored 2 records" in result.output
    assert stored_ids(dst) == ["a", "b"]


def test_password_from_environment(runner: CliRunner, tmp_path: Path) -> None:
    db, backup = tmp_path / "db.sqlite3", tmp_path / "b.encrypted"
    result = runner.invoke(
        main, ["--db", str(db), "export", str(backup)], env={"EVIDENCEKEEPER_PASSWORD": PASSWORD}
    )
    assert result.exit_code == 0, result.output
    assert backup.exists()


def test_short_password_rejected(runner: CliRunner, tmp_path: Path) -> None:
    backup = tmp_path / "b.encrypted"
    result = runner.invoke(
        main, ["--db", str(tmp_path / "db.sqlite3"), "export", str(backup), "--password", "abc"]
    )
    assert result.exit_code == 5
    assert "at least 6 characters" in result.output
    assert not backup.exists()


def test_wrong_password_exit_code(runner: CliRunner, tmp_path: Path) -> None:
    db, backup = tmp_path / "db.sqlite3", tmp_path / "b.encrypted"
    seed(db, make_record("keep"))
    runner.invoke(main, ["--db", str(db), "export", str(backup), "--password", PASSWORD])

    result = runner.invoke(
        main, ["--db", str(db), "import", str(backup), "--password", "wrong-password", "--yes"]
    )

    assert result.exit_code == 6
    assert "Incorrect password or corrupted backup file" in result.output
    assert stored_ids(db) == ["keep"]


def test_garbage_file_exit_code(runner: CliRunner, tmp_path: Path) -> None:
    garbage = tmp_path / "garbage.encrypted"
    garbage.write_text("definitely not a backup", encoding="utf-8")

    result = runner.invoke(
        main,
        ["--db", str(tmp_path / "db.sqlite3"), "import", str(garbage), "--password", PASSWORD, "--yes"],
    )

    assert result.exit_code == 7
    assert "not a valid backup file" in result.output


def test_import_requires_confirmation(runner: CliRunner, tmp_path: Path) -> None:
    db, backup = tmp_path / "db.sqlite3", tmp_path / "b.encrypted"
    seed(db, make_record("keep"))
    runner.invoke(main, ["--db", str(db), "export", str(backup), "--password", PASSWORD])

    result = runner.invoke(
        main, ["--db", str(db), "import", str(backup), "--password", PASSWORD], input="n\n"
    )

    assert result.exit_code == 1
    assert stored_ids(db) == ["keep"]


def test_verify(runner: CliRunner, tmp_path: Path) -> None:
    db = tmp_path / "db.sqlite3"
    tampered = make_record("bad")
    tampered.description = "changed after sealing"
    seed(db, make_record("good"))

    result = runner.invoke(main, ["--db", str(db), "verify"])
    assert result.exit_code == 0
    assert "All records verified" in result.output

    seed(db, tampered)
    result = runner.invoke(main, ["--db", str(db), "verify"])
    assert result.exit_code == 2
    assert "FAILED bad" in result.output
    assert "FAILED good" not in result.output


def test_merge(runner: CliRunner, tmp_path: Path) -> None:
    left_db, right_db = tmp_path / "left.sqlite3", tmp_path / "right.sqlite3"
    left, right, out = tmp_path / "l.encrypted", tmp_path / "r.encrypted", tmp_path / "m.encrypted"
    seed(left_db, make_record("A", description="mine"), make_record("L"))
    seed(right_db, make_record("A", description="theirs"), make_record("R"))
    runner.invoke(main, ["--db", str(left_db), "export", str(left), "--password", PASSWORD])
    runner.invoke(main, ["--db", str(right_db), "export", str(right), "--password", "other-pass"])

    result = runner.invoke(
        main,
        ["merge", str(left), str(right), str(out), "--password", PASSWORD, "--remote-password", "other-pass"],
    )

    assert result.exit_code == 0, result.output
    assert "Merged backup with 3 records" in result.output
    merged = restore_encrypted_backup(PASSWORD, read_backup_file(out))
    assert sorted(merged.record_ids()) == ["A", "L", "R"]
    assert next(r for r in merged.records if r.id == "A").description == "mine"


def test_import_legacy(runner: CliRunner, tmp_path: Path) -> None:
    db, legacy = tmp_path / "db.sqlite3", tmp_path / "legacy.json"
    legacy.write_text(
        json.dumps([{"id": "old", "description": "From v0", "createdAt": "2023-01-01T00:00:00Z"}]),
        encoding="utf-8",
    )

    result = runner.invoke(main, ["--db", str(db), "import-legacy", str(legacy), "--yes"])

    assert result.exit_code == 0, result.output
    assert "Imported 1 records" in result.output
    assert stored_ids(db) == ["old"]


def test_import_legacy_bad_shape(runner: CliRunner, tmp_path: Path) -> None:
    legacy = tmp_path / "legacy.json"
    legacy.write_text('{"entries": []}', encoding="utf-8")

    result = runner.invoke(
        main, ["--db", str(tmp_path / "db.sqlite3"), "import-legacy", str(legacy), "--yes"]
    )

    assert result.exit_code == 1
    assert "Legacy export is invalid" in result.output


def test_config_file_created(runner: CliRunner, tmp_path: Path) -> None:
    runner.invoke(main, ["--db", str(tmp_path / "db.sqlite3"), "verify"])
    cfg = json.loads((tmp_path / "config" / "evidencekeeper" / "config.json").read_text(encoding="utf-8"))
    assert cfg["storage_backend"] == "sqlite"
    assert "db_path" in cfg


def test_import_legacy_not_utf8(runner: CliRunner, tmp_path: Path) -> None:
    db, legacy = tmp_path / "db.sqlite3", tmp_path / "legacy.json"
    legacy.write_bytes(b'[{"id": "\xff\xfe"}]')
    seed(db, make_record("keep"))

    result = runner.invoke(main, ["--db", str(db), "import-legacy", str(legacy), "--yes"])

    assert result.exit_code == 1
    assert "Legacy export is invalid" in result.output
    assert stored_ids(db) == ["keep"]
