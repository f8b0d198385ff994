"""Tool catalog, typed tool inputs, implementations, and the registry.

Every tool returns a plain dict (its outcome). Failures are reported as
``{"error": "..."}`` instead of raised; the registry catches anything a
tool lets slip and converts it the same way.
"""

import fnmatch
import json
import logging
import os
import re
import signal
import subprocess
import sys
import threading
from collections import Counter
from dataclasses import MISSING, dataclass, fields
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger(__name__)

MAX_READ_LINES = 2000
MAX_SHELL_OUTPUT = 30_000  # chars kept from a shell command, head + tail
MAX_CAPTURE_BYTES = 1024 * 1024  # stop buffering a command's output after 1MB
DEFAULT_BASH_TIMEOUT_MS = 120_000
MAX_BASH_TIMEOUT_MS = 600_000
MAX_GLOB_RESULTS = 100
MAX_GREP_FILES = 50
MAX_GREP_LINES = 100
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024
SUMMARY_COMMAND_CHARS = 60

TOOLS = [
    {
        "name": "Read",
        "description": "Read a file from the filesystem. Returns file content with line numbers.",
        "input_schema": {
            "type": "object",
            "properties": {
                "file_path": {
                    "type": "string",
                    "description": "Absolute path to the file",
                },
                "offset": {
                    "type": "number",
                    "description": "Line offset to start from (0-indexed)",
                },
                "limit": {
                    "type": "number",
                    "description": "Max lines to read (default 2000)",
                },
            },
            "required": ["file_path"],
        },
    },
    {
        "name": "Write",
        "description": "Write content to a file. Creates parent directories if needed.",
        "input_schema": {
            "type": "object",
            "properties": {
                "file_path": {
                    "type": "string",
                    "description": "Absolute path to write to",
                },
                "content": {"type": "string", "description": "Content to write"},
            },
            "required": ["file_path", "content"],
        },
    },
    {
        "name": "Edit",
        "description": (
            "Edit a file by replacing an exact string match. Use for surgical edits."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "file_path": {
                    "type": "string",
                    "description": "Absolute path to the file",
                },
                "old_string": {"type": "string", "description": "Exact string to find"},
                "new_string": {"type": "string", "description": "Replacement string"},
                "replace_all": {
                    "type": "boolean",
                    "description": "Replace all occurrences",
                },
            },
            "required": ["file_path", "old_string", "new_string"],
        },
    },
    {
        "name": "Bash",
        "description": (
            "Run a shell command and return stdout/stderr. "
            "Use for git, build tools, system commands."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "Shell command to execute",
                },
                "timeout": {
                    "type": "number",
                    "description": "Timeout in ms (default 120000)",
                },
            },
            "required": ["command"],
        },
    },
    {
        "name": "Glob",
        "description": "Find files matching a glob pattern.",
        "input_schema": {
            "type": "object",
            "properties": {
                "pattern": {
                    "type": "string",
                    "description": "Glob pattern (e.g. *.js, *.py)",
                },
                "path": {"type": "string", "description": "Root directory to search"},
            },
            "required": ["pattern"],
        },
    },
    {
        "name": "Grep",
        "description": "Search for a pattern in files.",
        "input_schema": {
            "type": "object",
            "properties": {
                "pattern": {
                    "type": "string",
                    "description": "Search pattern (regex)",
                },
                "path": {"type": "string", "description": "Directory to search"},
                "output_mode": {
                    "type": "string",
                    "description": "files_with_matches or content",
                },
            },
            "required": ["pattern"],
        },
    },
]


# ---------------------------------------------------------------------------
# Typed inputs
# ---------------------------------------------------------------------------


class ToolInputError(ValueError):
    """Raised when a tool input mapping is missing a field or has a bad type."""


@dataclass
class ReadInput:
    file_path: str
    offset: int = 0
    limit: int = MAX_READ_LINES


@dataclass
class WriteInput:
    file_path: str
    content: str


@dataclass
class EditInput:
    file_path: str
    old_string: str
    new_string: str
    replace_all: bool = False


@dataclass
class BashInput:
    command: str
    timeout: int = DEFAULT_BASH_TIMEOUT_MS


@dataclass
class GlobInput:
    pattern: str
    path: str = "."


@dataclass
class GrepInput:
    pattern: str
    path: str = "."
    output_mode: str = "files_with_matches"


def _coerce(value, target):
    """Loose conversion of an optional field; falls back to None on mismatch."""
    if target is int:
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return int(value)
        if isinstance(value, str):
            try:
                return int(float(value))
            except (ValueError, OverflowError):
                return None
        return None
    if target is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.strip().lower() in ("true", "1", "yes")
        return bool(value)
    if target is str:
        return value if isinstance(value, str) else str(value)
    return value


def parse_input(input_type, raw):
    """Build a typed input record from a raw mapping.

    Required fields must be present and be strings. Optional fields are read
    loosely: a value that cannot be converted falls back to the default.
    """
    if not isinstance(raw, dict):
        raise ToolInputError(f"input must be an object, got {type(raw).__name__}")
    kwargs = {}
    for f in fields(input_type):
        required = f.default is MISSING
        if f.name not in raw or raw[f.name] is None:
            if required:
                raise ToolInputError(f"missing required field {f.name!r}")
            continue
        value = raw[f.name]
        if required:
            if not isinstance(value, str):
                raise ToolInputError(
                    f"field {f.name!r} must be a string, got {type(value).__name__}"
                )
            kwargs[f.name] = value
            continue
        converted = _coerce(value, f.type)
        if converted is not None:
            kwargs[f.name] = converted
    return input_type(**kwargs)


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------


def _resolve(file_path: str, base_dir: str) -> Path:
    path = Path(file_path).expanduser()
    if not path.is_absolute():
        path = Path(base_dir) / path
    return path


def _read_file(args: ReadInput, base_dir: str) -> dict:
    path = _resolve(args.file_path, base_dir)
    if not path.exists():
        return {"error": f"file does not exist: {args.file_path}"}
    if path.is_dir():
        return {"error": f"path is a directory, not a file: {args.file_path}"}
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        return {"error": f"failed to decode {args.file_path} as UTF-8: {exc}"}
    except OSError as exc:
        return {"error": str(exc)}

    lines = text.split("\n")
    offset = max(args.offset, 0)
    limit = max(args.limit, 0)
    selected = lines[offset : offset + limit]

    out = []
    for i, line in enumerate(selected, start=offset + 1):
        if len(line) > MAX_LINE_LENGTH:
            line = line[:MAX_LINE_LENGTH]
        out.append(f"{i:>6}\t{line}\n")
    return {"content": "".join(out), "total_lines": len(lines)}


def _write_file(args: WriteInput, base_dir: str) -> dict:
    path = _resolve(args.file_path, base_dir)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(args.content, encoding="utf-8")
    except OSError as exc:
        return {"error": str(exc)}
    return {
        "success": True,
        "lines": len(args.content.split("\n")),
        "path": args.file_path,
    }


def _edit_file(args: EditInput, base_dir: str) -> dict:
    path = _resolve(args.file_path, base_dir)
    if not path.is_file():
        return {"error": f"file does not exist: {args.file_path}"}
    if not args.old_string:
        return {"error": "old_string must not be empty"}
    try:
        content = path.read_text(encoding="utf-8")
    except (UnicodeDecodeError, OSError) as exc:
        return {"error": str(exc)}

    count = content.count(args.old_string)
    if count == 0:
        return {"error": "old_string not found in file"}
    if args.replace_all:
        new_content = content.replace(args.old_string, args.new_string)
    else:
        new_content = content.replace(args.old_string, args.new_string, 1)
        count = 1

    try:
        path.write_text(new_content, encoding="utf-8")
    except OSError as exc:
        return {"error": str(exc)}
    return {"success": True, "path": args.file_path, "replacements": count}


def truncate_output(output: str, limit: int = MAX_SHELL_OUTPUT) -> str:
    """Keep the head and tail of an oversized output around a marker."""
    if len(output) <= limit:
        return output
    half = limit // 2
    return (
        output[:half]
        + f"\n\n[... truncated {len(output) - limit} chars ...]\n\n"
        + output[-half:]
    )


_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit."""
    if sys.platform != "win32":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass
    try:
        proc.kill()
    except OSError:
        pass
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        logger.warning("process %d did not exit after kill", proc.pid)


def _capture_process(proc: subprocess.Popen, timeout: float) -> tuple[str, bool]:
    """Drain a subprocess's output with timeout enforcement.

    Returns (output, timed_out).
    """
    chunks: list[bytes] = []
    total = 0

    def _reader():
        nonlocal total
        try:
            while True:
                chunk = proc.stdout.read(4096)
                if not chunk:
                    break
                if total >= MAX_CAPTURE_BYTES:
                    continue  # keep draining to prevent pipe backpressure
                chunks.append(chunk[: MAX_CAPTURE_BYTES - total])
                total += len(chunks[-1])
        except (OSError, ValueError):
            pass  # pipe closed after kill

    reader_thread = threading.Thread(target=_reader, daemon=True)
    reader_thread.start()

    timed_out = False
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_process_tree(proc)

    reader_thread.join(timeout=2)
    proc.stdout.close()
    return b"".join(chunks).decode("utf-8", errors="replace"), timed_out


def _run_bash(args: BashInput, base_dir: str) -> dict:
    timeout_ms = max(1, min(args.timeout, MAX_BASH_TIMEOUT_MS))
    if sys.platform == "win32":
        shell_cmd = ["cmd.exe", "/c", args.command]
    else:
        shell_cmd = ["/bin/sh", "-c", args.command]

    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        cwd=base_dir,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True
    try:
        proc = subprocess.Popen(shell_cmd, **popen_kwargs)
    except OSError as exc:
        return {"error": f"failed to start shell command: {exc}"}

    output, timed_out = _capture_process(proc, timeout_ms / 1000)
    output = truncate_output(output)
    if timed_out:
        return {
            "error": f"command timed out after {timeout_ms / 1000:g}s",
            "stdout": output,
        }
    return {"stdout": output, "exit_code": proc.returncode}


def _walk(root: Path):
    """os.walk over root, pruning .git directories."""
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = [d for d in dirs if d != ".git"]
        yield Path(dirpath), files


def _glob(args: GlobInput, base_dir: str) -> dict:
    root = _resolve(args.path, base_dir)
    if not root.exists():
        return {"error": f"path does not exist: {args.path}"}
    if not root.is_dir():
        return {"error": f"path is not a directory: {args.path}"}

    pattern = args.pattern
    matched: list[Path] = []
    if "/" in pattern:
        # Path-shaped pattern: match relative paths, ** spanning directories.
        for filepath in root.glob(pattern):
            if filepath.is_file() and ".git" not in filepath.relative_to(root).parts:
                matched.append(filepath)
    else:
        name_pattern = pattern.replace("**", "*")
        for dirpath, files in _walk(root):
            for filename in files:
                if fnmatch.fnmatch(filename, name_pattern):
                    matched.append(dirpath / filename)

    def _mtime(p: Path) -> float:
        try:
            return p.stat().st_mtime
        except OSError:
            return 0.0

    matched.sort(key=_mtime, reverse=True)
    truncated = len(matched) > MAX_GLOB_RESULTS
    files = [_display_path(p, root, args.path) for p in matched[:MAX_GLOB_RESULTS]]
    result: dict = {"files": files}
    if truncated:
        result["truncated"] = True
    return result


def _display_path(path: Path, root: Path, given: str) -> str:
    """Render a found path the way the caller spelled its search root."""
    rel = path.relative_to(root)
    if given in (".", ""):
        return str(rel)
    return str(Path(given) / rel)


def _is_binary(path: Path) -> bool:
    try:
        with open(path, "rb") as f:
            return b"\x00" in f.read(BINARY_CHECK_BYTES)
    except OSError:
        return True


def _grep(args: GrepInput, base_dir: str) -> dict:
    try:
        regex = re.compile(args.pattern)
    except re.error as exc:
        return {"error": f"invalid regex {args.pattern!r}: {exc}"}

    root = _resolve(args.path, base_dir)
    if not root.exists():
        return {"error": f"path does not exist: {args.path}"}

    if root.is_file():
        candidates = [(root.parent, [root.name])]
        display_root, given = root.parent, str(Path(args.path).parent)
    else:
        candidates = _walk(root)
        display_root, given = root, args.path

    content_mode = args.output_mode == "content"
    cap = MAX_GREP_LINES if content_mode else MAX_GREP_FILES
    out: list[str] = []
    for dirpath, files in candidates:
        for filename in sorted(files):
            filepath = dirpath / filename
            if _is_binary(filepath):
                continue
            try:
                text = filepath.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            shown = _display_path(filepath, display_root, given)
            for line_no, line in enumerate(text.splitlines(), start=1):
                if not regex.search(line):
                    continue
                if not content_mode:
                    out.append(shown)
                    break
                out.append(f"{shown}:{line_no}:{line[:MAX_LINE_LENGTH]}")
                if len(out) >= cap:
                    break
            if len(out) >= cap:
                return {"matches": "\n".join(out) + "\n"}
    return {"matches": "\n".join(out) + "\n" if out else ""}


# ---------------------------------------------------------------------------
# Invocation summaries
# ---------------------------------------------------------------------------


def _summarize_read(raw: dict) -> str:
    return str(raw.get("file_path", ""))


def _summarize_write(raw: dict) -> str:
    content = raw.get("content")
    lines = len(content.split("\n")) if isinstance(content, str) and content else 0
    return f"{raw.get('file_path', '')} ({lines} lines)"


def _summarize_bash(raw: dict) -> str:
    command = str(raw.get("command", ""))
    if len(command) > SUMMARY_COMMAND_CHARS:
        return command[:SUMMARY_COMMAND_CHARS] + "..."
    return command


def _summarize_glob(raw: dict) -> str:
    return f"{raw.get('pattern', '')} in {raw.get('path') or '.'}"


def _summarize_grep(raw: dict) -> str:
    return f"'{raw.get('pattern', '')}' in {raw.get('path') or '.'}"


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    input_schema: dict
    input_type: type
    handler: Callable[[Any, str], dict]
    summarize: Callable[[dict], str]

    def to_wire(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


_HANDLERS = {
    "Read": (ReadInput, _read_file, _summarize_read),
    "Write": (WriteInput, _write_file, _summarize_write),
    "Edit": (EditInput, _edit_file, _summarize_read),
    "Bash": (BashInput, _run_bash, _summarize_bash),
    "Glob": (GlobInput, _glob, _summarize_glob),
    "Grep": (GrepInput, _grep, _summarize_grep),
}


def default_tools() -> list[ToolDescriptor]:
    descriptors = []
    for entry in TOOLS:
        input_type, handler, summarize = _HANDLERS[entry["name"]]
        descriptors.append(
            ToolDescriptor(
                name=entry["name"],
                description=entry["description"],
                input_schema=entry["input_schema"],
                input_type=input_type,
                handler=handler,
                summarize=summarize,
            )
        )
    return descriptors


class ToolRegistry:
    """Fixed catalog of named tools, each invoked in isolation.

    invoke() never raises: unknown tools, bad inputs, and unexpected
    exceptions all come back as ``{"error": ...}`` outcomes. Error outcomes
    are logged and counted per tool.
    """

    def __init__(self, base_dir: str = ".", tools: list[ToolDescriptor] | None = None):
        self.base_dir = base_dir
        self._tools: dict[str, ToolDescriptor] = {}
        for tool in tools if tools is not None else default_tools():
            if tool.name in self._tools:
                raise ValueError(f"duplicate tool name {tool.name!r}")
            self._tools[tool.name] = tool
        self.calls: Counter[str] = Counter()
        self.errors: Counter[str] = Counter()

    def catalog(self) -> list[dict]:
        """Tool definitions in the shape the Messages API expects."""
        return [tool.to_wire() for tool in self._tools.values()]

    def summarize(self, name: str, raw_input) -> str:
        tool = self._tools.get(name)
        if tool is None or not isinstance(raw_input, dict):
            return ""
        try:
            return tool.summarize(raw_input)
        except Exception as exc:
            logger.debug("summary for %s failed: %s", name, exc)
            return ""

    def invoke(self, name: str, raw_input) -> dict:
        self.calls[name] += 1
        tool = self._tools.get(name)
        if tool is None:
            outcome = {"error": f"Unknown tool: {name}"}
        else:
            try:
                args = parse_input(tool.input_type, raw_input)
                outcome = tool.handler(args, self.base_dir)
            except ToolInputError as exc:
                outcome = {"error": f"invalid input for {name}: {exc}"}
            except Exception as exc:
                logger.warning("tool %s raised %s: %s", name, type(exc).__name__, exc)
                outcome = {"error": f"{type(exc).__name__}: {exc}"}
        if "error" in outcome:
            self.errors[name] += 1
            logger.debug("tool %s returned error: %s", name, outcome["error"])
        return outcome

    def stats(self) -> dict[str, dict[str, int]]:
        return {
            name: {"calls": self.calls[name], "errors": self.errors[name]}
            for name in sorted(self.calls)
        }


def encode_outcome(outcome: dict) -> str:
    """Serialize an outcome as the payload of a tool result block."""
    return json.dumps(outcome, ensure_ascii=False)
