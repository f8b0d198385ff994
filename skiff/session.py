"""Session state: model, counters, and the conversation history."""

import time
from dataclasses import dataclass

from .history import History

DEFAULT_MODEL = "claude-3-5-haiku-20241022"
DEFAULT_MAX_TOKENS = 8192

MODEL_ALIASES = {
    "haiku": "claude-3-5-haiku-20241022",
    "fast": "claude-3-5-haiku-20241022",
    "sonnet": "claude-sonnet-4-20250514",
    "smart": "claude-sonnet-4-20250514",
}


@dataclass(frozen=True)
class Pricing:
    """USD per million tokens."""

    input: float
    output: float


PRICES = {
    "claude-sonnet-4-20250514": Pricing(3.0, 15.0),
    "claude-3-5-haiku-20241022": Pricing(0.8, 4.0),
    "claude-3-5-sonnet-20241022": Pricing(3.0, 15.0),
}


def resolve_model(name: str) -> str:
    """Map a /model argument to a model id. Unknown names pass through."""
    return MODEL_ALIASES.get(name.strip().lower(), name.strip())


class Session:
    """Mutable state of one interactive run or one-shot invocation.

    The agent loop reads and updates it; REPL commands inspect it between
    loop invocations.
    """

    def __init__(self, model: str = DEFAULT_MODEL, history: History | None = None):
        self.model = model
        self.history = history if history is not None else History()
        self.input_tokens = 0
        self.output_tokens = 0
        self.api_calls = 0
        self.turns = 0
        self.started = time.monotonic()
        self.started_at = time.time()

    def record_usage(self, input_tokens: int, output_tokens: int) -> None:
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        self.api_calls += 1

    def begin_turn(self) -> int:
        self.turns += 1
        return self.turns

    def clear(self) -> int:
        """Drop the conversation. Token and API-call totals are kept."""
        self.turns = 0
        return self.history.clear()

    def compact(self) -> int:
        return self.history.compact()

    def switch_model(self, name: str) -> str:
        self.model = resolve_model(name)
        return self.model

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def estimate_cost(self) -> float:
        prices = PRICES.get(self.model, PRICES[DEFAULT_MODEL])
        return (
            self.input_tokens * prices.input + self.output_tokens * prices.output
        ) / 1_000_000

    def elapsed(self) -> float:
        return time.monotonic() - self.started

    def stats(self) -> dict:
        return {
            "model": self.model,
            "turns": self.turns,
            "api_calls": self.api_calls,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "cost_usd": self.estimate_cost(),
            "elapsed_s": self.elapsed(),
            "history_turns": len(self.history),
        }
