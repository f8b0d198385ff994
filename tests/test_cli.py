"""Tests for the command-line entry point: argument parsing and exit codes."""

import json
from unittest.mock import patch

import pytest

from skiff import agent
from skiff.agent import build_parser, main
from skiff.history import TextBlock, ToolUseBlock
from skiff.transport import ModelResponse, TransportError, Usage


class FakeClient:
    def __init__(self, script):
        self.script = list(script)
        self.calls = []

    def send(self, messages, tools, *, model, max_tokens, system=None):
        self.calls.append(
            {"messages": messages, "model": model, "max_tokens": max_tokens, "system": system}
        )
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


def _text(text):
    return ModelResponse(content=[TextBlock(text)], usage=Usage(3, 2), stop_reason="end_turn")


def _tool():
    return ModelResponse(
        content=[ToolUseBlock("t1", "Glob", {"pattern": "*"})],
        usage=Usage(3, 2),
        stop_reason="tool_use",
    )


@pytest.fixture(autouse=True)
def _env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-api03-test")
    monkeypatch.delenv("SKIFF_MODEL", raising=False)
    monkeypatch.delenv("SKIFF_DEBUG", raising=False)


def _main(argv, client):
    with patch.object(agent, "MessagesClient", return_value=client) as ctor:
        with pytest.raises(SystemExit) as exc_info:
            main(argv)
    return exc_info.value.code, ctor


class TestArgumentParsing:
    def test_question(self):
        args = build_parser().parse_args(["what is this?"])
        assert args.question == "what is this?"
        assert args.repl is False

    def test_prompt_flag(self):
        args = build_parser().parse_args(["-p", "hello"])
        assert args.prompt == "hello"

    def test_color_flags_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--color", "--no-color"])

    def test_report_needs_question(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--repl", "--report", "r.json"])
        assert exc_info.value.code == 2

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--version"])
        assert exc_info.value.code == 0
        assert capsys.readouterr().out.strip()


class TestOneShot:
    def test_success(self, capsys):
        client = FakeClient([_text("the answer")])
        code, ctor = _main(["what?"], client)
        assert code == 0
        assert "the answer" in capsys.readouterr().out
        assert client.calls[0]["model"] == "claude-3-5-haiku-20241022"
        assert client.calls[0]["max_tokens"] == 8192
        assert "skiff" in client.calls[0]["system"]
        assert ctor.call_args.kwargs["auth_type"] == "api_key"

    def test_prompt_flag_and_model_alias(self):
        client = FakeClient([_text("ok")])
        code, _ = _main(["-p", "hi", "--model", "sonnet"], client)
        assert code == 0
        assert client.calls[0]["model"] == "claude-sonnet-4-20250514"

    def test_abort_exits_1(self, capsys):
        client = FakeClient([TransportError("HTTP 401: bad key", status=401)])
        code, _ = _main(["hi"], client)
        assert code == 1
        assert "HTTP 401: bad key" in capsys.readouterr().err

    def test_exhausted_exits_2(self):
        client = FakeClient([_tool(), _tool()])
        code, _ = _main(["hi", "--max-iterations", "2"], client)
        assert code == 2
        assert len(client.calls) == 2

    def test_oneshot_cap_from_config(self, tmp_path):
        (tmp_path / "skiff.toml").write_text("oneshot_max_iterations = 1\n")
        client = FakeClient([_tool()])
        code, _ = _main(["hi"], client)
        assert code == 2

    def test_system_prompt_override(self):
        client = FakeClient([_text("ok")])
        _main(["hi", "--system-prompt", "Be terse."], client)
        assert client.calls[0]["system"] == "Be terse."

    def test_invalid_max_iterations(self):
        with pytest.raises(SystemExit) as exc_info:
            main(["hi", "--max-iterations", "0"])
        assert exc_info.value.code == 2

    def test_missing_credentials_exits_1(self, monkeypatch, tmp_path, capsys):
        monkeypatch.delenv("ANTHROPIC_API_KEY")
        monkeypatch.setenv("HOME", str(tmp_path))
        code, _ = _main(["hi"], FakeClient([]))
        assert code == 1
        assert "no API token" in capsys.readouterr().err

    def test_bad_config_exits_1(self, tmp_path, capsys):
        (tmp_path / "skiff.toml").write_text("max_tokens = 'many'\n")
        code, _ = _main(["hi"], FakeClient([]))
        assert code == 1
        assert "max_tokens" in capsys.readouterr().err


class TestReport:
    def test_success_report(self, tmp_path):
        client = FakeClient([_tool(), _text("done")])
        code, _ = _main(["list", "--report", "out.json"], client)
        assert code == 0
        data = json.loads((tmp_path / "out.json").read_text())
        assert data["task"] == "list"
        assert data["result"] == {"outcome": "success", "answer": "done", "exit_code": 0}
        assert data["stats"]["iterations"] == 1
        assert data["stats"]["tools"] == {"Glob": {"succeeded": 1, "failed": 0}}
        assert data["stats"]["model_calls"] == 2
        assert data["stats"]["input_tokens"] == 6
        assert data["stats"]["cost_usd"] > 0

    def test_report_records_resolved_model(self, tmp_path):
        client = FakeClient([_text("ok")])
        _main(["hi", "--model", "sonnet", "--report", "out.json"], client)
        data = json.loads((tmp_path / "out.json").read_text())
        assert data["model"] == "claude-sonnet-4-20250514"

    def test_error_report(self, tmp_path):
        client = FakeClient([TransportError("Fetch error: refused")])
        code, _ = _main(["x", "--report", "out.json"], client)
        assert code == 1
        data = json.loads((tmp_path / "out.json").read_text())
        assert data["result"]["outcome"] == "error"
        assert data["result"]["error_message"] == "Fetch error: refused"

    def test_config_error_report(self, tmp_path):
        (tmp_path / "skiff.toml").write_text("model = 3\n")
        code, _ = _main(["x", "--report", "out.json"], FakeClient([]))
        assert code == 1
        data = json.loads((tmp_path / "out.json").read_text())
        assert data["result"]["outcome"] == "error"
        assert data["model"] == "unknown"


class TestInteractive:
    def test_no_question_starts_repl(self):
        client = FakeClient([])
        with patch.object(agent, "repl_loop") as repl:
            code, _ = _main([], client)
        assert code == 0
        assert repl.call_args.kwargs["max_iterations"] == 25
        assert repl.call_args.kwargs["initial_question"] is None

    def test_repl_with_question(self):
        with patch.object(agent, "repl_loop") as repl:
            code, _ = _main(["--repl", "start here"], FakeClient([]))
        assert code == 0
        assert repl.call_args.kwargs["initial_question"] == "start here"
