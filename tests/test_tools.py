"""Tests for the tool implementations, typed inputs, and ToolRegistry."""

import json
import logging
import os
import sys

import pytest

from skiff.tools import (
    MAX_GLOB_RESULTS,
    TOOLS,
    BashInput,
    EditInput,
    ReadInput,
    ToolDescriptor,
    ToolInputError,
    ToolRegistry,
    encode_outcome,
    parse_input,
    truncate_output,
)


@pytest.fixture
def registry(tmp_path):
    return ToolRegistry(str(tmp_path))


# ---------------------------------------------------------------------------
# Typed inputs
# ---------------------------------------------------------------------------


class TestParseInput:
    def test_defaults_applied(self):
        args = parse_input(ReadInput, {"file_path": "/x"})
        assert args == ReadInput("/x", 0, 2000)

    def test_missing_required(self):
        with pytest.raises(ToolInputError, match="file_path"):
            parse_input(ReadInput, {})

    def test_required_must_be_string(self):
        with pytest.raises(ToolInputError):
            parse_input(BashInput, {"command": 42})

    def test_non_mapping(self):
        with pytest.raises(ToolInputError):
            parse_input(ReadInput, ["file_path"])

    def test_optional_float_converted(self):
        assert parse_input(ReadInput, {"file_path": "x", "offset": 3.0}).offset == 3

    def test_optional_numeric_string_converted(self):
        assert parse_input(BashInput, {"command": "ls", "timeout": "500"}).timeout == 500

    def test_unconvertible_optional_uses_default(self):
        assert parse_input(ReadInput, {"file_path": "x", "limit": "lots"}).limit == 2000

    def test_bool_string(self):
        args = parse_input(
            EditInput,
            {"file_path": "x", "old_string": "a", "new_string": "b", "replace_all": "true"},
        )
        assert args.replace_all is True

    def test_tool_input_error_is_value_error(self):
        assert issubclass(ToolInputError, ValueError)


# ---------------------------------------------------------------------------
# Read / Write / Edit
# ---------------------------------------------------------------------------


class TestRead:
    def test_line_numbers(self, registry, tmp_path):
        (tmp_path / "a.txt").write_text("alpha\nbeta")
        out = registry.invoke("Read", {"file_path": str(tmp_path / "a.txt")})
        assert out == {"content": "     1\talpha\n     2\tbeta\n", "total_lines": 2}

    def test_offset_and_limit(self, registry, tmp_path):
        (tmp_path / "a.txt").write_text("\n".join(f"line{i}" for i in range(10)))
        out = registry.invoke("Read", {"file_path": "a.txt", "offset": 3, "limit": 2})
        assert out["content"] == "     4\tline3\n     5\tline4\n"
        assert out["total_lines"] == 10

    def test_relative_path_resolves_against_base_dir(self, registry, tmp_path):
        (tmp_path / "rel.txt").write_text("x")
        assert "error" not in registry.invoke("Read", {"file_path": "rel.txt"})

    def test_missing_file(self, registry, tmp_path):
        out = registry.invoke("Read", {"file_path": str(tmp_path / "nope.txt")})
        assert "error" in out
        assert "does not exist" in out["error"]

    def test_directory(self, registry, tmp_path):
        out = registry.invoke("Read", {"file_path": str(tmp_path)})
        assert "directory" in out["error"]

    def test_undecodable(self, registry, tmp_path):
        (tmp_path / "bin").write_bytes(b"\xff\xfe\x00\x81")
        assert "error" in registry.invoke("Read", {"file_path": "bin"})


class TestWrite:
    def test_creates_parents(self, registry, tmp_path):
        out = registry.invoke("Write", {"file_path": "deep/dir/f.txt", "content": "a\nb\nc"})
        assert out == {"success": True, "lines": 3, "path": "deep/dir/f.txt"}
        assert (tmp_path / "deep" / "dir" / "f.txt").read_text() == "a\nb\nc"

    def test_missing_content(self, registry):
        out = registry.invoke("Write", {"file_path": "f.txt"})
        assert "content" in out["error"]


class TestEdit:
    def test_first_occurrence_only(self, registry, tmp_path):
        f = tmp_path / "f.txt"
        f.write_text("foo foo foo")
        out = registry.invoke(
            "Edit", {"file_path": str(f), "old_string": "foo", "new_string": "bar"}
        )
        assert out == {"success": True, "path": str(f), "replacements": 1}
        assert f.read_text() == "bar foo foo"

    def test_replace_all(self, registry, tmp_path):
        f = tmp_path / "f.txt"
        f.write_text("foo foo foo")
        out = registry.invoke(
            "Edit",
            {"file_path": str(f), "old_string": "foo", "new_string": "bar", "replace_all": True},
        )
        assert out["replacements"] == 3
        assert f.read_text() == "bar bar bar"

    def test_not_found(self, registry, tmp_path):
        f = tmp_path / "f.txt"
        f.write_text("hello")
        out = registry.invoke(
            "Edit", {"file_path": str(f), "old_string": "zzz", "new_string": "y"}
        )
        assert out == {"error": "old_string not found in file"}
        assert f.read_text() == "hello"

    def test_empty_old_string(self, registry, tmp_path):
        f = tmp_path / "f.txt"
        f.write_text("hello")
        out = registry.invoke("Edit", {"file_path": str(f), "old_string": "", "new_string": "y"})
        assert "empty" in out["error"]

    def test_missing_file(self, registry):
        out = registry.invoke("Edit", {"file_path": "nope", "old_string": "a", "new_string": "b"})
        assert "does not exist" in out["error"]


# ---------------------------------------------------------------------------
# Bash
# ---------------------------------------------------------------------------


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell")
class TestBash:
    def test_stdout_and_exit_code(self, registry):
        out = registry.invoke("Bash", {"command": "echo hello"})
        assert out == {"stdout": "hello\n", "exit_code": 0}

    def test_stderr_merged(self, registry):
        out = registry.invoke("Bash", {"command": "echo oops 1>&2"})
        assert out["stdout"] == "oops\n"

    def test_nonzero_exit_is_not_error(self, registry):
        out = registry.invoke("Bash", {"command": "exit 3"})
        assert out == {"stdout": "", "exit_code": 3}
        assert registry.stats()["Bash"]["errors"] == 0

    def test_runs_in_base_dir(self, registry, tmp_path):
        out = registry.invoke("Bash", {"command": "pwd"})
        assert os.path.realpath(out["stdout"].strip()) == os.path.realpath(tmp_path)

    def test_timeout_returns_partial_output(self, registry):
        out = registry.invoke("Bash", {"command": "echo started; sleep 10", "timeout": 300})
        assert "timed out" in out["error"]
        assert "started" in out["stdout"]

    def test_large_output_truncated(self, registry):
        out = registry.invoke("Bash", {"command": "head -c 40000 /dev/zero | tr '\\0' a"})
        assert "[... truncated 10000 chars ...]" in out["stdout"]


class TestTruncateOutput:
    def test_short_unchanged(self):
        assert truncate_output("abc") == "abc"

    def test_head_and_tail_kept(self):
        text = "h" * 15_000 + "m" * 5_000 + "t" * 15_000
        out = truncate_output(text)
        assert out.startswith("h" * 15_000)
        assert out.endswith("t" * 15_000)
        assert "[... truncated 5000 chars ...]" in out
        assert "m" not in out


# ---------------------------------------------------------------------------
# Glob / Grep
# ---------------------------------------------------------------------------


class TestGlob:
    def test_matches_names_anywhere(self, registry, tmp_path):
        (tmp_path / "a.py").write_text("")
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "b.py").write_text("")
        (tmp_path / "c.txt").write_text("")
        out = registry.invoke("Glob", {"pattern": "*.py"})
        assert sorted(out["files"]) == ["a.py", os.path.join("sub", "b.py")]

    def test_double_star_collapses(self, registry, tmp_path):
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "b.py").write_text("")
        out = registry.invoke("Glob", {"pattern": "**.py"})
        assert out["files"] == [os.path.join("sub", "b.py")]

    def test_path_pattern(self, registry, tmp_path):
        (tmp_path / "src" / "pkg").mkdir(parents=True)
        (tmp_path / "src" / "pkg" / "m.py").write_text("")
        (tmp_path / "top.py").write_text("")
        out = registry.invoke("Glob", {"pattern": "src/**/*.py"})
        assert out["files"] == [os.path.join("src", "pkg", "m.py")]

    def test_newest_first(self, registry, tmp_path):
        for i, name in enumerate(["old.py", "mid.py", "new.py"]):
            p = tmp_path / name
            p.write_text("")
            os.utime(p, (1_000_000 + i * 100, 1_000_000 + i * 100))
        out = registry.invoke("Glob", {"pattern": "*.py"})
        assert out["files"] == ["new.py", "mid.py", "old.py"]

    def test_git_skipped(self, registry, tmp_path):
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "config.py").write_text("")
        assert registry.invoke("Glob", {"pattern": "*.py"})["files"] == []

    def test_truncated(self, registry, tmp_path):
        for i in range(MAX_GLOB_RESULTS + 5):
            (tmp_path / f"f{i}.txt").write_text("")
        out = registry.invoke("Glob", {"pattern": "*.txt"})
        assert len(out["files"]) == MAX_GLOB_RESULTS
        assert out["truncated"] is True

    def test_missing_path(self, registry):
        assert "error" in registry.invoke("Glob", {"pattern": "*", "path": "nope"})


class TestGrep:
    def test_files_with_matches(self, registry, tmp_path):
        (tmp_path / "a.py").write_text("import os\nprint('hi')\n")
        (tmp_path / "b.py").write_text("nothing here\n")
        out = registry.invoke("Grep", {"pattern": "import"})
        assert out == {"matches": "a.py\n"}

    def test_content_mode(self, registry, tmp_path):
        (tmp_path / "a.py").write_text("x = 1\ny = 2\nx = 3\n")
        out = registry.invoke("Grep", {"pattern": r"^x", "output_mode": "content"})
        assert out["matches"] == "a.py:1:x = 1\na.py:3:x = 3\n"

    def test_no_match(self, registry, tmp_path):
        (tmp_path / "a.py").write_text("hello\n")
        assert registry.invoke("Grep", {"pattern": "zzz"}) == {"matches": ""}

    def test_invalid_regex(self, registry):
        out = registry.invoke("Grep", {"pattern": "("})
        assert "invalid regex" in out["error"]

    def test_binary_files_skipped(self, registry, tmp_path):
        (tmp_path / "blob.bin").write_bytes(b"needle\x00\x01")
        (tmp_path / "t.txt").write_text("needle\n")
        assert registry.invoke("Grep", {"pattern": "needle"})["matches"] == "t.txt\n"

    def test_single_file_path(self, registry, tmp_path):
        (tmp_path / "a.py").write_text("needle\n")
        out = registry.invoke("Grep", {"pattern": "needle", "path": "a.py"})
        assert out["matches"] == "a.py\n"

    def test_missing_path(self, registry):
        assert "error" in registry.invoke("Grep", {"pattern": "x", "path": "nope"})


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_catalog_matches_tool_definitions(self, registry):
        catalog = registry.catalog()
        assert [t["name"] for t in catalog] == ["Read", "Write", "Edit", "Bash", "Glob", "Grep"]
        assert catalog == TOOLS
        for tool in catalog:
            assert tool["input_schema"]["type"] == "object"

    def test_unknown_tool(self, registry):
        assert registry.invoke("Delete", {}) == {"error": "Unknown tool: Delete"}

    def test_non_mapping_input(self, registry):
        out = registry.invoke("Read", "not a dict")
        assert "invalid input" in out["error"]

    def test_handler_exception_caught_and_logged(self, tmp_path, caplog):
        def boom(args, base_dir):
            raise RuntimeError("kaboom")

        tool = ToolDescriptor(
            name="Boom",
            description="",
            input_schema={"type": "object", "properties": {}},
            input_type=BashInput,
            handler=boom,
            summarize=lambda raw: "",
        )
        reg = ToolRegistry(str(tmp_path), tools=[tool])
        with caplog.at_level(logging.WARNING, logger="skiff.tools"):
            out = reg.invoke("Boom", {"command": "x"})
        assert out == {"error": "RuntimeError: kaboom"}
        assert "kaboom" in caplog.text
        assert reg.stats() == {"Boom": {"calls": 1, "errors": 1}}

    def test_duplicate_names_rejected(self, tmp_path):
        tool = ToolDescriptor("X", "", {}, BashInput, lambda a, b: {}, lambda r: "")
        with pytest.raises(ValueError):
            ToolRegistry(str(tmp_path), tools=[tool, tool])

    def test_stats_counts(self, registry, tmp_path):
        (tmp_path / "a.txt").write_text("x")
        registry.invoke("Read", {"file_path": "a.txt"})
        registry.invoke("Read", {"file_path": "missing"})
        assert registry.stats() == {"Read": {"calls": 2, "errors": 1}}

    def test_encode_outcome(self):
        assert json.loads(encode_outcome({"files": ["é"]})) == {"files": ["é"]}


class TestSummaries:
    @pytest.mark.parametrize(
        "name, raw, expected",
        [
            ("Read", {"file_path": "/a/b.py"}, "/a/b.py"),
            ("Write", {"file_path": "/a", "content": "1\n2\n3"}, "/a (3 lines)"),
            ("Write", {"file_path": "/a", "content": ""}, "/a (0 lines)"),
            ("Edit", {"file_path": "/a"}, "/a"),
            ("Bash", {"command": "ls -la"}, "ls -la"),
            ("Bash", {"command": "x" * 70}, "x" * 60 + "..."),
            ("Glob", {"pattern": "*.py"}, "*.py in ."),
            ("Glob", {"pattern": "*.py", "path": "src"}, "*.py in src"),
            ("Grep", {"pattern": "TODO"}, "'TODO' in ."),
        ],
    )
    def test_summary(self, registry, name, raw, expected):
        assert registry.summarize(name, raw) == expected

    def test_unknown_tool_summary_empty(self, registry):
        assert registry.summarize("Nope", {}) == ""
