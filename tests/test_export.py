"""Tests for Markdown export of a session."""

from datetime import datetime

from skiff.export import default_export_name, export_conversation, render_markdown
from skiff.history import TextBlock, ToolResultBlock, ToolUseBlock, Turn
from skiff.session import Session


def _session():
    s = Session("claude-3-5-haiku-20241022")
    s.history.append(Turn.user("list files"))
    s.history.append(
        Turn.assistant(
            [TextBlock("Sure."), ToolUseBlock("t1", "Bash", {"command": "ls"})]
        )
    )
    s.history.append(Turn.user([ToolResultBlock("t1", "x" * 800)]))
    s.history.append(Turn.assistant([TextBlock("Two files.")]))
    s.begin_turn()
    s.record_usage(1000, 200)
    return s


class TestRenderMarkdown:
    def test_header(self):
        md = render_markdown(_session())
        assert md.startswith("# skiff Session\n")
        assert "Model: claude-3-5-haiku-20241022\n" in md
        assert "Host: " in md

    def test_turns(self):
        md = render_markdown(_session())
        assert "## User\n\nlist files\n\n" in md
        assert "## Assistant\n\nSure.\n\n" in md
        assert '### Tool: Bash\n```json\n{\n  "command": "ls"\n}\n```' in md
        assert "## Assistant\n\nTwo files." in md

    def test_tool_result_clipped(self):
        md = render_markdown(_session())
        assert "### Tool Result\n```\n" + "x" * 500 + "\n```" in md
        assert "x" * 501 not in md

    def test_footer(self):
        md = render_markdown(_session())
        assert md.rstrip().endswith("*Session: 1 turns, 1000/200 tokens, $0.0016*")


class TestExportConversation:
    def test_writes_file(self, tmp_path):
        path = export_conversation(_session(), str(tmp_path / "out.md"))
        assert path == tmp_path / "out.md"
        assert "list files" in path.read_text()

    def test_default_name(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        path = export_conversation(_session())
        assert path.name.startswith("skiff_")
        assert (tmp_path / path).exists()

    def test_default_export_name_format(self):
        name = default_export_name(datetime(2024, 5, 6, 7, 8, 9))
        assert name == "skiff_2024-05-06T07-08-09.md"
