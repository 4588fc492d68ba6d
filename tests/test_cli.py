"""End-to-end tests for the codex-bridge command line against the fake codex binary."""

import json
import logging
from logging.handlers import RotatingFileHandler

import fire
import pytest

from bridge_cli.main import BridgeCLI, _split_list


@pytest.fixture
def workspace(tmp_path, monkeypatch, fake_codex):
    home = tmp_path / "home"
    vault = tmp_path / "vault"
    vault.mkdir()
    (vault / "doc.md").write_text("rough draft", encoding="utf-8")
    monkeypatch.setenv("HOME", str(tmp_path / "user"))
    monkeypatch.setenv("CODEX_BRIDGE_CODEX_COMMAND", fake_codex)
    monkeypatch.chdir(tmp_path)
    yield home, vault
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, RotatingFileHandler):
            root.removeHandler(handler)
            handler.close()


def _cli(workspace):
    home, vault = workspace
    return BridgeCLI(home=str(home), vault=str(vault))


def _state(workspace):
    home, _ = workspace
    return json.loads((home / "state.json").read_text(encoding="utf-8"))


# ---------------------------------------------------------------------------
# Chat turns
# ---------------------------------------------------------------------------


class TestSend:
    def test_streams_answer_and_persists(self, workspace, capsys):
        _cli(workspace).send("hello there")
        out = capsys.readouterr().out
        assert "Hello world" in out
        state = _state(workspace)
        session = state["chatSessions"][0]
        assert [m["role"] for m in session["messages"]] == ["user", "assistant"]
        assert session["messages"][1]["content"] == "Hello world"
        assert session["agentThreadId"] == "thread-new"

    def test_note_seeds_auto_mention(self, workspace, fake_codex_log):
        _cli(workspace).send("总结一下", note="doc")
        prompts = [
            e["rpc"]["params"]
            for e in fake_codex_log()
            if "rpc" in e and e["rpc"].get("method") == "turn/start"
        ]
        assert prompts
        assert "rough draft" in json.dumps(prompts[0], ensure_ascii=False)

    def test_undecodable_note_is_skipped(self, workspace, capsys):
        _, vault = workspace
        (vault / "latin.md").write_bytes("caf\xe9".encode("latin-1"))
        _cli(workspace).send("hello", note="latin.md")
        captured = capsys.readouterr()
        assert "Could not read latin.md" in captured.err
        assert "Hello world" in captured.out

    def test_failed_turn_exits_nonzero(self, workspace, monkeypatch, capsys):
        monkeypatch.setenv("FAKE_CODEX_MODE", "turn_error")
        with pytest.raises(SystemExit) as exc:
            _cli(workspace).send("hello")
        assert exc.value.code == 1
        captured = capsys.readouterr()
        assert "Codex 执行失败" in captured.err
        assert "model overloaded" in captured.out

    def test_exec_fallback_when_app_server_missing(self, workspace, monkeypatch, capsys):
        monkeypatch.setenv("FAKE_CODEX_MODE", "no_app_server")
        monkeypatch.setenv("FAKE_CODEX_EXEC_REPLY", "from exec")
        _cli(workspace).send("hello")
        assert "from exec" in capsys.readouterr().out
        session = _state(workspace)["chatSessions"][0]
        assert session["agentSessionId"] == "0199a213-81c0-7800-8aa1-bbab2a035a53"


# ---------------------------------------------------------------------------
# Session management
# ---------------------------------------------------------------------------


class TestSessions:
    def test_new_use_delete(self, workspace, capsys):
        cli = _cli(workspace)
        cli.new()
        first = capsys.readouterr().out.strip()
        cli.new()
        second = capsys.readouterr().out.strip()
        assert first != second

        cli.sessions()
        listing = capsys.readouterr().out
        assert f"* {second}" in listing
        assert first in listing

        cli.use(first)
        assert first in capsys.readouterr().out
        assert _state(workspace)["activeSessionId"] == first

        cli.delete(first)
        assert _state(workspace)["activeSessionId"] != first

    def test_use_unknown_session(self, workspace, capsys):
        with pytest.raises(SystemExit) as exc:
            _cli(workspace).use("nope")
        assert exc.value.code == 1
        assert "No such session" in capsys.readouterr().err

    def test_usage_and_compact_on_empty_session(self, workspace, capsys):
        cli = _cli(workspace)
        cli.usage()
        assert "Context: 0/200000" in capsys.readouterr().out
        cli.compact()
        assert "Nothing to compact." in capsys.readouterr().out


# ---------------------------------------------------------------------------
# Models, skills, processing
# ---------------------------------------------------------------------------


class TestOtherCommands:
    def test_models_select_persists(self, workspace, capsys):
        _cli(workspace).models(select="gpt-5.3-codex")
        out = capsys.readouterr().out
        assert "* gpt-5.3-codex" in out
        assert "  gpt-5.2-codex (recommended)" in out
        assert _state(workspace)["selectedModel"] == "gpt-5.3-codex"

    def test_skills_listing(self, workspace, capsys):
        _, vault = workspace
        skill_dir = vault / ".codex" / "skills" / "writer"
        skill_dir.mkdir(parents=True)
        (skill_dir / "SKILL.md").write_text("---\ndescription: Polishes prose\n---\n# Writer\n", encoding="utf-8")
        cli = _cli(workspace)
        cli.skills()
        assert "vault:writer  writer  - Polishes prose" in capsys.readouterr().out
        cli.skills(query="nothing-matches")
        assert "No skills found." in capsys.readouterr().out

    def test_process_prints_without_writing(self, workspace, monkeypatch, capsys, fake_codex_log):
        _, vault = workspace
        monkeypatch.setenv("FAKE_CODEX_EXEC_REPLY", "polished draft")
        _cli(workspace).process("doc.md", instruction="tighten it")
        assert "polished draft" in capsys.readouterr().out
        assert (vault / "doc.md").read_text(encoding="utf-8") == "rough draft"
        prompt = next(e["prompt"] for e in fake_codex_log() if "prompt" in e)
        assert "tighten it" in prompt and "rough draft" in prompt

    def test_process_write_replaces(self, workspace, monkeypatch):
        _, vault = workspace
        monkeypatch.setenv("FAKE_CODEX_EXEC_REPLY", "polished draft")
        _cli(workspace).process("doc", write=True)
        assert (vault / "doc.md").read_text(encoding="utf-8") == "polished draft"

    def test_fire_dispatch(self, workspace, capsys):
        home, vault = workspace
        fire.Fire(BridgeCLI, command=["models", f"--home={home}", f"--vault={vault}"])
        assert "gpt-5.2-codex" in capsys.readouterr().out


def test_split_list():
    assert _split_list(None) == []
    assert _split_list("a.png, b.png,") == ["a.png", "b.png"]
    assert _split_list(("a.png", " ")) == ["a.png"]
