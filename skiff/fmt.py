"""Terminal output using Rich.

Assistant text goes to stdout; everything else (tool calls, diagnostics,
REPL chrome) goes to stderr so piped output stays clean.
"""

import logging
from contextlib import nullcontext

from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.markup import escape
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

_console = Console(stderr=True)
_out = Console()


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level consoles from CLI flags.

    Call once at startup, before any output.
    """
    global _console, _out
    kwargs: dict = {}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(stderr=True, **kwargs)
    _out = Console(**kwargs)


def setup_logging(debug: bool = False) -> None:
    """Route the standard logging module through Rich on stderr."""
    handler = RichHandler(console=_console, show_path=False, show_time=False)
    log = logging.getLogger("skiff")
    log.handlers[:] = [handler]
    log.setLevel(logging.DEBUG if debug else logging.WARNING)


def set_debug(enabled: bool) -> None:
    logging.getLogger("skiff").setLevel(logging.DEBUG if enabled else logging.WARNING)


# -- Round trips -------------------------------------------------------------


def turn_header(n: int, max_n: int, token_est: int) -> None:
    title = f"Iteration {n}/{max_n} (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, stop_reason: str | None) -> None:
    style = "green" if stop_reason in ("end_turn", "tool_use") else "yellow"
    text = Text()
    text.append(f"  Model responded in {elapsed:.1f}s", style=style)
    text.append(f"  stop_reason={escape(str(stop_reason))}", style=style)
    _console.print(text)


def llm_spinner(label: str = "Thinking..."):
    """Spinner on stderr while waiting for the model; a no-op off a terminal."""
    if not _console.is_terminal:
        return nullcontext()
    return _console.status(f"  {label}", spinner="dots")


def completion(iterations: int, state: str) -> None:
    if state == "turn_complete":
        _console.print(
            Text(f"  \u2713 Done after {iterations} tool rounds", style="bold green")
        )
    else:
        _console.print(
            Text(f"  Stopped after {iterations} tool rounds: {state}", style="bold red")
        )


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, summary: str) -> None:
    line = Text()
    line.append("  \u25b6 ", style="bold magenta")
    line.append(name, style="bold magenta")
    if summary:
        line.append(f" {summary}", style="dim")
    _console.print(line)


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  \u2713 {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  \u2717 {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


# -- Assistant text ----------------------------------------------------------


def assistant_text(text: str) -> None:
    if _out.is_terminal:
        _out.print(Markdown(text))
    else:
        _out.print(text, markup=False, highlight=False, soft_wrap=True)


def shell_output(text: str) -> None:
    _out.print(text.rstrip("\n"), markup=False, highlight=False, soft_wrap=True)


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def success(msg: str) -> None:
    _console.print(Text(f"  \u2713 {msg}", style="green"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  \u26a0 Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


# -- REPL --------------------------------------------------------------------


def repl_banner(model: str, base_dir: str) -> None:
    _console.print(Text("skiff", style="bold cyan"), Text(f"({model})", style="dim"))
    _console.print(Text(f"Working in {base_dir}", style="dim"))
    _console.print(
        Text("Type /help for commands, /exit or Ctrl-D to quit.", style="dim")
    )


def repl_help(commands: list[tuple[str, str]]) -> None:
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()
    for command, description in commands:
        table.add_row(command, description)
    _console.print(table)


def stats_table(stats: dict) -> None:
    table = Table(title="Session", show_header=False, title_justify="left")
    table.add_column(style="bold")
    table.add_column(justify="right")
    table.add_row("Model", escape(stats["model"]))
    table.add_row("Turns", str(stats["turns"]))
    table.add_row("API calls", str(stats["api_calls"]))
    table.add_row("Input tokens", f"{stats['input_tokens']:,}")
    table.add_row("Output tokens", f"{stats['output_tokens']:,}")
    table.add_row("Total tokens", f"{stats['total_tokens']:,}")
    table.add_row("Est. cost", f"${stats['cost_usd']:.4f}")
    table.add_row("Elapsed", f"{stats['elapsed_s']:.0f}s")
    _console.print(table)


def history_entry(index: int, role: str, preview: str) -> None:
    line = Text()
    style = "blue" if role == "user" else "green"
    line.append(f"  {index:>3}. ", style="dim")
    line.append(f"{role:<9}", style=style)
    line.append(preview)
    _console.print(line)


def session_summary(turns: int, total_tokens: int, cost: float) -> None:
    _console.print(
        Text(
            f"  {turns} turns, {total_tokens:,} tokens, ~${cost:.4f}",
            style="dim",
        )
    )
