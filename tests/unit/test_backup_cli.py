"""
Unit tests for the offline backup CLI.
"""

import asyncio
import json
import tempfile
from pathlib import Path

import pytest

from backend.inventdb_server.store.collection_store import CollectionStore
from backend.inventdb_server.tools.backup_cli import build_parser, main


@pytest.fixture
def dirs():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "data", Path(tmpdir) / "backups"


def run_cli(dirs, *args):
    argv = ["--data-dir", str(dirs[0]), "--backup-dir", str(dirs[1]), *args]
    with pytest.raises(SystemExit) as exc_info:
        main(argv)
    return exc_info.value.code


def seed(dirs, *names):
    async def _seed():
        store = CollectionStore(str(dirs[0]))
        await store.initialize()
        for name in names:
            await store.create("employees", {"name": name, "department": "IT"})
        return store

    return asyncio.run(_seed())


def employee_names(dirs):
    async def _names():
        store = CollectionStore(str(dirs[0]))
        await store.initialize()
        return [r.data["name"] for r in await store.list("employees")]

    return asyncio.run(_names())


class TestBackupCLI:
    """Tests for the inventdb-backup commands."""

    def test_parser_requires_command(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_create_and_list(self, dirs, capsys):
        seed(dirs, "Ann")
        assert run_cli(dirs, "create", "--name", "first") == 0
        assert "Created snapshot first" in capsys.readouterr().out

        assert run_cli(dirs, "list", "--json") == 0
        listing = json.loads(capsys.readouterr().out)
        assert [m["name"] for m in listing] == ["first"]
        assert listing[0]["counts"]["employees"] == 1

    def test_list_empty(self, dirs, capsys):
        assert run_cli(dirs, "list") == 0
        assert "No snapshots" in capsys.readouterr().out

    def test_show_to_file(self, dirs, capsys):
        seed(dirs, "Ann")
        run_cli(dirs, "create", "--name", "snap")
        output = dirs[1] / "out.txt"
        assert run_cli(dirs, "show", "snap", "-o", str(output)) == 0
        assert json.loads(output.read_text())["employees"][0]["name"] == "Ann"

    def test_restore(self, dirs, capsys):
        seed(dirs, "Ann")
        run_cli(dirs, "create", "--name", "snap")
        seed(dirs, "Bob")
        assert sorted(employee_names(dirs)) == ["Ann", "Bob"]

        assert run_cli(dirs, "restore", "snap") == 0
        assert employee_names(dirs) == ["Ann"]

    def test_restore_missing_fails(self, dirs, capsys):
        assert run_cli(dirs, "restore", "nope") == 1
        assert "not found" in capsys.readouterr().err

    def test_delete(self, dirs, capsys):
        run_cli(dirs, "create", "--name", "snap")
        assert run_cli(dirs, "delete", "snap") == 0
        assert not (dirs[1] / "snap.json").exists()

    def test_import(self, dirs, capsys):
        seed(dirs, "Old")
        dump = dirs[1].parent / "dump.json"
        dump.write_text(json.dumps({"employees": [{"name": "New", "department": "HR"}]}))

        assert run_cli(dirs, "import", str(dump)) == 0
        out = capsys.readouterr().out
        assert "Pre-import backup: pre-import-backup-" in out
        assert employee_names(dirs) == ["New"]

    def test_import_no_backup(self, dirs, capsys):
        dump = dirs[1].parent / "dump.json"
        dump.write_text(json.dumps({"employees": []}))
        assert run_cli(dirs, "import", str(dump), "--no-backup") == 0
        assert "Pre-import backup" not in capsys.readouterr().out
        assert not dirs[1].exists() or not list(dirs[1].glob("*.json"))

    def test_import_invalid_file(self, dirs, capsys):
        dump = dirs[1].parent / "dump.json"
        dump.write_text("not json")
        assert run_cli(dirs, "import", str(dump)) == 1
        assert "Cannot read import file" in capsys.readouterr().err
