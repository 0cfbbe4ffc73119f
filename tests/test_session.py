"""Tests for the Session library API and session log persistence."""

import json
import sys

import pytest

from agentic_terminal.report import ConfigError, ModelCallError, TurnLimitError
from agentic_terminal.session import Session
from agentic_terminal.sessionlog import default_log_dir, save_session_log
from agentic_terminal.conversation import Conversation, Turn

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell required")


class ScriptedClient:
    def __init__(self, responses):
        self.responses = list(responses)

    def complete(self, prompt):
        r = self.responses.pop(0)
        if isinstance(r, Exception):
            raise r
        return r


def _session(tmp_path, responses, **kwargs):
    kwargs.setdefault("log_dir", str(tmp_path / "logs"))
    return Session(client=ScriptedClient(responses), cwd=str(tmp_path), **kwargs)


class TestSessionRun:
    def test_success(self, tmp_path):
        result = _session(tmp_path, ["echo hi > out.txt", "exit"]).run("write hi")
        assert result.outcome == "success"
        assert result.exit_code == 0
        assert result.error is None
        assert result.turns == 2
        assert (tmp_path / "out.txt").read_text() == "hi\n"
        assert result.report is None

    def test_model_error_returned_not_raised(self, tmp_path):
        result = _session(tmp_path, [RuntimeError("boom")]).run("t")
        assert result.outcome == "error"
        assert result.exit_code == 1
        assert isinstance(result.error, ModelCallError)
        assert "turn 1" in str(result.error)

    def test_turn_limit_is_exhausted(self, tmp_path):
        result = _session(tmp_path, ["true"] * 3, max_turns=2).run("t")
        assert result.outcome == "exhausted"
        assert result.exit_code == 2
        assert isinstance(result.error, TurnLimitError)

    def test_missing_cwd_is_config_error(self, tmp_path):
        session = Session(client=ScriptedClient(["exit"]), cwd=str(tmp_path / "nope"))
        result = session.run("t")
        assert isinstance(result.error, ConfigError)
        assert result.turns == 0

    def test_missing_api_key_is_config_error(self, tmp_path, monkeypatch):
        monkeypatch.delenv("API_KEY", raising=False)
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        result = Session(provider="anthropic", session_log=False).run("t")
        assert isinstance(result.error, ConfigError)
        assert result.exit_code == 1

    def test_report(self, tmp_path):
        result = _session(tmp_path, ["ls", "exit"]).run("t", report=True)
        report = result.report
        assert report["task"] == "t"
        assert report["result"] == {"outcome": "success", "exit_code": 0}
        assert report["stats"]["commands_run"] == 1
        assert report["stats"]["turns"] == 2

    def test_report_carries_error(self, tmp_path):
        result = _session(tmp_path, [RuntimeError("boom")]).run("t", report=True)
        assert result.report["result"]["outcome"] == "error"
        assert "boom" in result.report["result"]["error_message"]

    def test_report_turns_count_failed_turn(self, tmp_path):
        result = _session(tmp_path, ["ls", RuntimeError("boom")]).run("t", report=True)
        assert result.report["stats"]["turns"] == 2
        assert result.report["stats"]["llm_calls"] == 2

    def test_report_turns_on_turn_limit(self, tmp_path):
        result = _session(tmp_path, ["true"] * 3, max_turns=2).run("t", report=True)
        assert result.report["stats"]["turns"] == 2
        assert result.report["result"]["exit_code"] == 2


class TestSessionLog:
    def test_log_written(self, tmp_path):
        result = _session(tmp_path, ["echo 1", "exit"]).run("count")
        assert result.log_path is not None
        data = json.loads(result.log_path.read_text())
        assert data["task"] == "count"
        assert data["outcome"] == "success"
        assert [t["kind"] for t in data["turns"]] == ["command", "terminate"]
        assert "exit" in data["system_prompt"]

    def test_log_written_on_failure(self, tmp_path):
        result = _session(tmp_path, ["ls", RuntimeError("boom")]).run("t")
        data = json.loads(result.log_path.read_text())
        assert data["outcome"] == "error"
        assert "boom" in data["error_message"]

    def test_log_disabled(self, tmp_path):
        result = _session(tmp_path, ["exit"], session_log=False).run("t")
        assert result.log_path is None
        assert not (tmp_path / "logs").exists()

    def test_unwritable_log_dir_is_not_fatal(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        result = _session(tmp_path, ["exit"], log_dir=str(blocker / "logs")).run("t")
        assert result.outcome == "success"
        assert result.log_path is None

    def test_default_log_dir_respects_xdg(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path))
        assert default_log_dir() == tmp_path / "agentic-terminal" / "logs"

    def test_save_session_log_fields(self, tmp_path):
        conv = Conversation("t")
        conv.record(Turn.for_termination("exit"))
        path = save_session_log(
            conv, outcome="success", model="openai/gpt-4o", provider="openai", log_dir=tmp_path
        )
        data = json.loads(path.read_text())
        assert path.parent == tmp_path
        assert data["model"] == "openai/gpt-4o"
        assert data["provider"] == "openai"
        assert "error_message" not in data
