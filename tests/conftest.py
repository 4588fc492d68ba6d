"""Shared fixtures: a spawnable fake ``codex`` binary."""

import json
import os
import stat
import sys
from pathlib import Path

import pytest

FAKE_CODEX = Path(__file__).parent / "fakes" / "fake_codex.py"


@pytest.fixture
def fake_codex(tmp_path, monkeypatch):
    """Path of an executable wrapper that runs tests/fakes/fake_codex.py."""
    if os.name == "nt":
        pytest.skip("fake codex wrapper needs a POSIX shell")
    wrapper = tmp_path / "bin" / "codex"
    wrapper.parent.mkdir()
    wrapper.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{FAKE_CODEX}" "$@"\n', encoding="utf-8")
    wrapper.chmod(wrapper.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    for name in ("FAKE_CODEX_MODE", "FAKE_CODEX_DELTAS", "FAKE_CODEX_ITEMS_TEXT",
                 "FAKE_CODEX_EXEC_REPLY", "FAKE_CODEX_EXEC_EXIT", "CODEX_BRIDGE_RPC_LOG"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("FAKE_CODEX_LOG", str(tmp_path / "fake_codex.jsonl"))
    return str(wrapper)


@pytest.fixture
def fake_codex_log(tmp_path):
    """Reader for everything the fake binary recorded."""
    def read():
        path = tmp_path / "fake_codex.jsonl"
        if not path.exists():
            return []
        return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]

    return read
