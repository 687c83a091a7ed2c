from __future__ import annotations

import argparse
import io
from pathlib import Path
from unittest.mock import AsyncMock

from agentbridge.client.store import ClientStore
from agentbridge.client.watch import Printer
from agentbridge.config import Config
from agentbridge.core import git_worktree
from agentbridge.main import _build_parser, _project_command


class TestPrinter:
    async def test_renders_store_changes(self):
        out = io.StringIO()
        printer = Printer(out)
        store = ClientStore(listener=printer, stream_interval=10)
        printer.store = store

        store.handle({"type": "connected", "agents": [
            {"id": "abcdef123456", "type": "codex", "status": "idle", "sessionName": "Fix tests"},
        ]})
        store.handle({"type": "streamChunk", "agentId": "abcdef123456", "text": "Working"})
        store.flush_streams()
        store.handle({
            "type": "permissionRequest", "agentId": "abcdef123456",
            "requestId": "r1", "toolName": "command_execution", "toolInput": {"command": "ls"},
        })
        store.handle({"type": "agentResult", "agentId": "abcdef123456", "totalCost": 0.5, "contextUsedPercent": 12})

        text = out.getvalue()
        assert "Connected: 1 agent(s)" in text
        assert "abcdef12 codex" in text
        assert "[abcdef12] \nWorking" in text
        assert "permission r1: command_execution" in text
        assert "done: $0.5000, context 12%" in text
        assert printer.finished == {"abcdef123456"}


class TestProjectCli:
    def test_parser(self):
        args = _build_parser().parse_args(["project", "add", "/src/app", "--name", "App"])
        assert (args.command, args.project_command, args.path, args.name) == ("project", "add", "/src/app", "App")
        assert _build_parser().parse_args([]).command is None

    async def test_add_list_remove(self, data_dir: Path, tmp_path: Path, monkeypatch, capsys):
        async def toplevel(path):
            return path

        monkeypatch.setattr(git_worktree, "toplevel", toplevel)
        config = Config(data_dir=data_dir)
        repo = tmp_path / "app"
        repo.mkdir()

        code = await _project_command(argparse.Namespace(project_command="add", path=str(repo), name=None), config)
        assert code == 0
        out = capsys.readouterr().out
        assert out.startswith("Registered app (")
        project_id = out.split("(")[1].split(")")[0]

        assert await _project_command(argparse.Namespace(project_command="list"), config) == 0
        assert str(repo.resolve()) in capsys.readouterr().out

        remove = argparse.Namespace(project_command="remove", project_id=project_id)
        assert await _project_command(remove, config) == 0
        assert await _project_command(remove, config) == 1
        assert "Unknown project" in capsys.readouterr().err

    async def test_add_rejects_non_repository(self, data_dir: Path, tmp_path: Path, monkeypatch, capsys):
        monkeypatch.setattr(git_worktree, "toplevel", AsyncMock(return_value=None))
        args = argparse.Namespace(project_command="add", path=str(tmp_path), name=None)
        assert await _project_command(args, Config(data_dir=data_dir)) == 1
        assert "Not a git repository" in capsys.readouterr().err

    async def test_empty_list(self, data_dir: Path, capsys):
        assert await _project_command(argparse.Namespace(project_command="list"), Config(data_dir=data_dir)) == 0
        assert "No projects registered." in capsys.readouterr().out
