import argparse
import enum
import json
import logging
import os
import platform
import socket
import sys
import time
from dataclasses import dataclass
from importlib import metadata
from pathlib import Path

import tiktoken

from . import fmt
from .config import (
    _UNSET,
    apply_config_to_args,
    env_config,
    load_config,
    resolve_credentials,
)
from .export import export_conversation
from .history import TextBlock, ToolResultBlock, ToolUseBlock, Turn
from .report import AgentError, ReportCollector
from .session import MODEL_ALIASES, PRICES, Session, resolve_model
from .tools import ToolRegistry, encode_outcome
from .transport import MessagesClient, ModelResponse, ProtocolError, TransportError

logger = logging.getLogger(__name__)

RESULT_PREVIEW_CHARS = 150
MAX_FILE_REFERENCE_CHARS = 50_000
EMPTY_RESPONSE_TEXT = "(no content)"

_encoder = None
_encoder_failed = False


def _get_encoder():
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("cl100k_base")
    return _encoder


def _count_tokens(text: str) -> int:
    """tiktoken count, or ~4 chars per token when the encoding can't be loaded."""
    global _encoder_failed
    if not _encoder_failed:
        try:
            return len(_get_encoder().encode(text))
        except Exception as e:
            # The encoding is fetched over the network on first use.
            logger.warning("tiktoken unavailable, estimating by length: %s", e)
            _encoder_failed = True
    return len(text) // 4


def estimate_tokens(messages: list, tools: list | None = None) -> int:
    """Count tokens across wire-format messages using tiktoken."""
    total = 0
    for m in messages:
        content = m.get("content", "") or ""
        if isinstance(content, list):
            parts = []
            for block in content:
                if not isinstance(block, dict):
                    continue
                if block.get("type") == "text":
                    parts.append(block.get("text", ""))
                elif block.get("type") == "tool_use":
                    parts.append(block.get("name", ""))
                    parts.append(json.dumps(block.get("input", {})))
                elif block.get("type") == "tool_result":
                    parts.append(str(block.get("content", "")))
            content = "\n".join(parts)
        total += _count_tokens(content)
    if tools:
        total += _count_tokens(json.dumps(tools))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total


def build_system_prompt(base_dir: str, override: str | None = None) -> str:
    if override:
        return override
    cwd = str(Path(base_dir).resolve())
    return (
        "You are skiff, an interactive CLI coding assistant.\n\n"
        f"Current working directory: {cwd}\n"
        f"Platform: {platform.system().lower()} {platform.machine()}\n"
        f"Hostname: {socket.gethostname()}\n\n"
        "You have access to tools for reading/writing files, running shell "
        "commands, and searching. Use tools to explore the filesystem and "
        "execute commands. Be concise and helpful. When writing code, use the "
        "Write tool. When editing, use the Edit tool with exact string matches. "
        "For shell operations, use the Bash tool. Prefer absolute file paths."
    )


def expand_file_references(text: str, base_dir: str = ".") -> str:
    """Inline the content of every readable ``@path`` token.

    The token is replaced by the bare path and the file's content is
    appended in a fenced block. Unreadable references are left as-is.
    """
    parts = text.split()
    extra = []
    for i, part in enumerate(parts):
        if not part.startswith("@") or len(part) < 2:
            continue
        file_path = part[1:]
        path = Path(file_path).expanduser()
        if not path.is_absolute():
            path = Path(base_dir) / path
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            continue
        if len(content) > MAX_FILE_REFERENCE_CHARS:
            content = content[:MAX_FILE_REFERENCE_CHARS] + "\n\n[... truncated ...]"
        extra.append(f"File: {file_path}\n```\n{content}\n```")
        parts[i] = file_path

    if not extra:
        return text
    return " ".join(parts) + "\n\n" + "\n\n".join(extra)


# ---------------------------------------------------------------------------
# Orchestration loop
# ---------------------------------------------------------------------------


class LoopState(enum.Enum):
    AWAITING_MODEL_RESPONSE = "awaiting_model_response"
    PROCESSING_BLOCKS = "processing_blocks"
    DISPATCHING_TOOLS = "dispatching_tools"
    TURN_COMPLETE = "turn_complete"
    ITERATION_LIMIT_REACHED = "iteration_limit_reached"
    ABORTED = "aborted"


@dataclass
class LoopResult:
    """Outcome of one run_agent_loop() invocation."""

    state: LoopState
    iterations: int
    answer: str | None = None
    error: str | None = None

    @property
    def exhausted(self) -> bool:
        return self.state is LoopState.ITERATION_LIMIT_REACHED


def _check_protocol(response: ModelResponse) -> None:
    """Reject responses whose tool requests cannot be answered unambiguously."""
    seen = set()
    for block in response.content:
        if isinstance(block, ToolResultBlock):
            raise ProtocolError("assistant response contains a tool_result block")
        if isinstance(block, ToolUseBlock):
            if not block.id:
                raise ProtocolError(f"tool_use block for {block.name!r} has no id")
            if block.id in seen:
                raise ProtocolError(f"duplicate tool_use id {block.id!r}")
            seen.add(block.id)


def handle_tool_call(
    registry: ToolRegistry,
    request: ToolUseBlock,
    iteration: int,
    report: ReportCollector | None = None,
) -> ToolResultBlock:
    """Dispatch one tool request and wrap its outcome as a result block."""
    fmt.tool_call(request.name, registry.summarize(request.name, request.input))

    t0 = time.monotonic()
    outcome = registry.invoke(request.name, request.input)
    elapsed = time.monotonic() - t0

    payload = encode_outcome(outcome)
    error = outcome.get("error")
    succeeded = error is None
    if succeeded:
        fmt.tool_result(request.name, elapsed, payload[:RESULT_PREVIEW_CHARS])
    else:
        fmt.tool_error(request.name, str(error))

    if report:
        report.record_tool_call(
            iteration,
            request.name,
            request.input,
            succeeded,
            elapsed,
            len(payload),
            error=None if succeeded else str(error),
        )
    return ToolResultBlock(
        tool_use_id=request.id, content=payload, is_error=not succeeded
    )


def run_agent_loop(
    session: Session,
    client,
    registry: ToolRegistry,
    user_content,
    *,
    max_iterations: int,
    system_prompt: str | None = None,
    max_tokens: int = 8192,
    verbose: bool = False,
    report: ReportCollector | None = None,
) -> LoopResult:
    """Drive one logical user turn to completion.

    Appends the user turn, then alternates model calls and tool dispatches
    until a response has no tool requests or `max_iterations` tool rounds
    have run. On a transport failure the history is rolled back to its
    length at entry and the result state is ABORTED.
    """
    if max_iterations < 1:
        raise ValueError(f"max_iterations must be at least 1, got {max_iterations}")

    history = session.history
    entry_length = len(history)
    history.append(Turn.user(user_content))
    session.begin_turn()

    tools = registry.catalog()
    state = LoopState.AWAITING_MODEL_RESPONSE
    iterations = 0
    response: ModelResponse | None = None
    requests: list[ToolUseBlock] = []

    while True:
        if state is LoopState.AWAITING_MODEL_RESPONSE:
            messages = history.to_wire()
            if verbose:
                fmt.turn_header(
                    iterations + 1, max_iterations, estimate_tokens(messages, tools)
                )
            t0 = time.monotonic()
            try:
                with fmt.llm_spinner():
                    response = client.send(
                        messages,
                        tools,
                        model=session.model,
                        max_tokens=max_tokens,
                        system=system_prompt,
                    )
                _check_protocol(response)
            except TransportError as e:
                elapsed = time.monotonic() - t0
                removed = history.truncate(entry_length)
                logger.debug("model call failed, rolled back %d turns: %s", removed, e)
                if report:
                    report.record_model_call(iterations + 1, elapsed, None, error=str(e))
                    report.record_rollback(iterations + 1, removed)
                return LoopResult(LoopState.ABORTED, iterations, error=str(e))

            elapsed = time.monotonic() - t0
            session.record_usage(
                response.usage.input_tokens, response.usage.output_tokens
            )
            if verbose:
                fmt.llm_timing(elapsed, response.stop_reason)
            if report:
                report.record_model_call(
                    iterations + 1,
                    elapsed,
                    response.stop_reason,
                    input_tokens=response.usage.input_tokens,
                    output_tokens=response.usage.output_tokens,
                )
            state = LoopState.PROCESSING_BLOCKS

        elif state is LoopState.PROCESSING_BLOCKS:
            texts = []
            requests = []
            for block in response.content:
                if isinstance(block, TextBlock) and block.text:
                    fmt.assistant_text(block.text)
                    texts.append(block.text)
                elif isinstance(block, ToolUseBlock):
                    requests.append(block)
            if requests:
                state = LoopState.DISPATCHING_TOOLS
            else:
                state = LoopState.TURN_COMPLETE

        elif state is LoopState.DISPATCHING_TOOLS:
            results = [
                handle_tool_call(registry, request, iterations + 1, report)
                for request in requests
            ]
            history.append(Turn.assistant(response.content))
            history.append(Turn.user(results))
            iterations += 1
            if iterations >= max_iterations:
                state = LoopState.ITERATION_LIMIT_REACHED
            else:
                state = LoopState.AWAITING_MODEL_RESPONSE

        elif state is LoopState.TURN_COMPLETE:
            content = response.content or [TextBlock(EMPTY_RESPONSE_TEXT)]
            history.append(Turn.assistant(content))
            return LoopResult(state, iterations, "\n".join(texts) or None)

        elif state is LoopState.ITERATION_LIMIT_REACHED:
            logger.debug("iteration cap %d reached", max_iterations)
            answer = history.last_assistant_text(entry_length)
            return LoopResult(state, iterations, answer)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="skiff",
        usage="%(prog)s [options] [question]\n       %(prog)s --repl [options] [question]",
        description="A terminal coding agent for the Anthropic Messages API.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "-p",
        "--prompt",
        default=None,
        help="Answer a single question and exit (same as the positional question).",
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session (the default when no question is given).",
    )
    parser.add_argument(
        "--model",
        default=_UNSET,
        help="Model id or alias: haiku/fast, sonnet/smart.",
    )
    parser.add_argument(
        "--api-key",
        default=_UNSET,
        help="API key or OAuth token (overrides ANTHROPIC_API_KEY).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="API base URL (default: https://api.anthropic.com).",
    )
    parser.add_argument(
        "--max-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens per response (default: 8192).",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=_UNSET,
        help="Maximum tool rounds per question (default: 25 interactive, 15 one-shot).",
    )
    parser.add_argument(
        "--base-dir",
        default=".",
        help="Directory tools resolve relative paths against (default: .).",
    )
    parser.add_argument(
        "--system-prompt",
        default=_UNSET,
        help="Replace the built-in system prompt.",
    )
    parser.add_argument(
        "--report",
        metavar="FILE",
        default=None,
        help="Write a JSON run report to FILE (one-shot mode only).",
    )
    parser.add_argument(
        "--debug",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Show per-request diagnostics and debug logging.",
    )
    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Force ANSI color even when not a terminal.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Disable ANSI color.",
    )
    parser.set_defaults(oneshot_max_iterations=_UNSET, request_timeout=_UNSET)
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        try:
            version = metadata.version("skiff")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.question and args.prompt:
        parser.error("give the question either positionally or with -p, not both")
    args.question = args.question or args.prompt
    if args.report and (args.repl or not args.question):
        parser.error("--report requires a one-shot question")

    fmt.setup_logging()
    report = ReportCollector() if args.report else None

    def _setting(name):
        value = getattr(args, name, None)
        return None if value is _UNSET else value

    def _write_report(outcome, *, answer=None, exit_code=0, iterations=0, **extra):
        if not report:
            return
        report.finalize(
            task=args.question or "",
            model=_setting("model") or "unknown",
            settings={
                "max_iterations": _setting("oneshot_max_iterations"),
                "max_tokens": _setting("max_tokens"),
                "base_dir": args.base_dir,
            },
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            iterations=iterations,
            **extra,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        fmt.info(f"Report written to {args.report}")

    try:
        exit_code = _run_main(args, parser, report, _write_report)
    except AgentError as e:
        fmt.error(str(e))
        _write_report("error", exit_code=1, error_message=str(e))
        sys.exit(1)
    sys.exit(exit_code)


def _run_main(args, parser, report, _write_report) -> int:
    base_dir = args.base_dir
    if not Path(base_dir).is_dir():
        raise AgentError(f"base directory does not exist: {base_dir}")

    config = {**env_config(), **load_config(base_dir)}
    apply_config_to_args(args, config)
    args.model = resolve_model(args.model)
    if args.max_iterations < 1 or args.oneshot_max_iterations < 1:
        parser.error("--max-iterations must be at least 1")
    if args.max_tokens < 1:
        parser.error("--max-tokens must be at least 1")

    fmt.init(color=args.color, no_color=args.no_color)
    fmt.setup_logging(debug=args.debug)

    creds = resolve_credentials(args.api_key)
    logger.debug("using %s credentials from %s", creds.auth_type, creds.source)
    client = MessagesClient(
        creds.token,
        auth_type=creds.auth_type,
        base_url=args.base_url,
        timeout=args.request_timeout,
    )
    registry = ToolRegistry(base_dir)
    session = Session(model=args.model)
    system_prompt = build_system_prompt(base_dir, args.system_prompt)

    if args.repl or not args.question:
        repl_loop(
            session,
            client,
            registry,
            max_iterations=args.max_iterations,
            system_prompt=system_prompt,
            max_tokens=args.max_tokens,
            verbose=args.debug,
            initial_question=args.question,
        )
        return 0

    result = run_agent_loop(
        session,
        client,
        registry,
        expand_file_references(args.question, base_dir),
        max_iterations=args.oneshot_max_iterations,
        system_prompt=system_prompt,
        max_tokens=args.max_tokens,
        verbose=args.debug,
        report=report,
    )
    cost = session.estimate_cost()
    if result.state is LoopState.ABORTED:
        fmt.error(result.error or "request failed")
        _write_report(
            "error",
            answer=result.answer,
            exit_code=1,
            iterations=result.iterations,
            error_message=result.error,
            cost_usd=cost,
        )
        return 1
    if result.exhausted:
        fmt.warning(
            f"reached the tool iteration limit ({args.oneshot_max_iterations})"
        )
        _write_report(
            "exhausted",
            answer=result.answer,
            exit_code=2,
            iterations=result.iterations,
            cost_usd=cost,
        )
        return 2
    if args.debug:
        fmt.completion(result.iterations, result.state.value)
    _write_report(
        "success",
        answer=result.answer,
        exit_code=0,
        iterations=result.iterations,
        cost_usd=cost,
    )
    return 0


# ---------------------------------------------------------------------------
# REPL
# ---------------------------------------------------------------------------

REPL_COMMANDS = [
    ("/help", "Show this help message"),
    ("/clear", "Clear the conversation history"),
    ("/stats, /cost", "Show token usage and estimated cost"),
    ("/status", "Show model, directory and history size"),
    ("/model [name]", "Show or switch model (haiku, sonnet, or a model id)"),
    ("/compact", "Keep the first and last 6 turns of the conversation"),
    ("/history", "List conversation turns"),
    ("/export [file]", "Save the conversation as Markdown"),
    ("/debug", "Toggle per-request diagnostics"),
    ("/exit, /quit", "Exit the REPL"),
    ("!command", "Run a shell command directly"),
    ("@path", "Include a file's content in your message"),
]


def _repl_help() -> None:
    fmt.repl_help(REPL_COMMANDS)


def _repl_clear(session: Session) -> None:
    dropped = session.clear()
    fmt.success(f"Conversation cleared ({dropped} turns removed)")


def _repl_stats(session: Session) -> None:
    fmt.stats_table(session.stats())


def _repl_status(session: Session, registry: ToolRegistry, state: dict) -> None:
    fmt.info(f"Model: {session.model}")
    fmt.info(f"Directory: {Path(registry.base_dir).resolve()}")
    fmt.info(f"History: {len(session.history)} turns")
    fmt.info(f"Debug: {'on' if state['verbose'] else 'off'}")
    tool_stats = registry.stats()
    if tool_stats:
        summary = ", ".join(
            f"{name} {s['calls']}" + (f" ({s['errors']} failed)" if s["errors"] else "")
            for name, s in tool_stats.items()
        )
        fmt.info(f"Tool calls: {summary}")


def _repl_model(session: Session, arg: str) -> None:
    arg = arg.strip()
    if not arg:
        fmt.info(f"Current model: {session.model}")
        fmt.info("Known models: " + ", ".join(sorted(PRICES)))
        fmt.info("Aliases: " + ", ".join(sorted(MODEL_ALIASES)))
        return
    model = session.switch_model(arg)
    fmt.success(f"Model switched to {model}")


def _repl_compact(session: Session) -> None:
    before = len(session.history)
    tokens_before = estimate_tokens(session.history.to_wire())
    elided = session.compact()
    if not elided:
        fmt.info(f"Nothing to compact ({before} turns)")
        return
    tokens_after = estimate_tokens(session.history.to_wire())
    fmt.success(
        f"Compacted {before} -> {len(session.history)} turns "
        f"(~{tokens_before} -> ~{tokens_after} tokens)"
    )


def _repl_history(session: Session) -> None:
    entries = session.history.previews()
    if not entries:
        fmt.info("No conversation history")
        return
    for index, role, preview in entries:
        fmt.history_entry(index, role, preview)


def _repl_export(session: Session, arg: str) -> None:
    try:
        path = export_conversation(session, arg.strip() or None)
    except OSError as e:
        fmt.error(f"Export failed: {e}")
        return
    fmt.success(f"Exported to: {path}")


def _repl_debug(state: dict) -> None:
    state["verbose"] = not state["verbose"]
    fmt.set_debug(state["verbose"])
    fmt.info(f"Debug mode {'on' if state['verbose'] else 'off'}")


def _repl_shell(registry: ToolRegistry, command: str) -> None:
    command = command.strip()
    if not command:
        return
    outcome = registry.invoke("Bash", {"command": command})
    if "error" in outcome:
        if outcome.get("stdout"):
            fmt.shell_output(outcome["stdout"])
        fmt.error(outcome["error"])
        return
    fmt.shell_output(outcome["stdout"])
    if outcome["exit_code"]:
        fmt.warning(f"exit code {outcome['exit_code']}")


def _repl_ask(
    line: str,
    session: Session,
    client,
    registry: ToolRegistry,
    state: dict,
    *,
    max_iterations: int,
    system_prompt: str | None,
    max_tokens: int,
) -> LoopResult | None:
    """Run one conversation turn. Ctrl-C discards the turn."""
    before = len(session.history)
    try:
        result = run_agent_loop(
            session,
            client,
            registry,
            expand_file_references(line, registry.base_dir),
            max_iterations=max_iterations,
            system_prompt=system_prompt,
            max_tokens=max_tokens,
            verbose=state["verbose"],
        )
    except KeyboardInterrupt:
        session.history.truncate(before)
        fmt.warning("interrupted, turn discarded.")
        return None
    if result.state is LoopState.ABORTED:
        fmt.error(result.error or "request failed")
    elif result.exhausted:
        fmt.warning(f"reached the tool iteration limit ({max_iterations})")
    return result


def repl_loop(
    session: Session,
    client,
    registry: ToolRegistry,
    *,
    max_iterations: int,
    system_prompt: str | None = None,
    max_tokens: int = 8192,
    verbose: bool = False,
    initial_question: str | None = None,
) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(registry.base_dir, ".skiff", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    prompt_session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansicyan", "skiff> ")])

    fmt.repl_banner(session.model, str(Path(registry.base_dir).resolve()))

    state = {"verbose": verbose}
    ask_kwargs = dict(
        max_iterations=max_iterations,
        system_prompt=system_prompt,
        max_tokens=max_tokens,
    )

    if initial_question:
        _repl_ask(initial_question, session, client, registry, state, **ask_kwargs)

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = prompt_session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue
        if line.lower() in ("exit", "quit", "/exit", "/quit"):
            break

        if line.startswith("!"):
            _repl_shell(registry, line[1:])
            continue

        if line.startswith("/"):
            cmd_parts = line.split(None, 1)
            cmd = cmd_parts[0].lower()
            cmd_arg = cmd_parts[1] if len(cmd_parts) > 1 else ""

            if cmd == "/help":
                _repl_help()
            elif cmd == "/clear":
                _repl_clear(session)
            elif cmd in ("/stats", "/cost"):
                _repl_stats(session)
            elif cmd == "/status":
                _repl_status(session, registry, state)
            elif cmd == "/model":
                _repl_model(session, cmd_arg)
            elif cmd == "/compact":
                _repl_compact(session)
            elif cmd == "/history":
                _repl_history(session)
            elif cmd == "/export":
                _repl_export(session, cmd_arg)
            elif cmd == "/debug":
                _repl_debug(state)
            else:
                fmt.warning(f"unknown command {cmd}, type /help for a list")
            continue

        _repl_ask(line, session, client, registry, state, **ask_kwargs)

    fmt.session_summary(session.turns, session.total_tokens, session.estimate_cost())
