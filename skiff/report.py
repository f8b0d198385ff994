"""Error types and JSON run reports for one-shot invocations."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised for reportable runtime failures; main() turns it into exit code 1."""


class ConfigError(AgentError):
    """Raised for invalid configuration (bad config file, missing API token, etc.)."""


class ReportCollector:
    """Timeline of model calls, tool calls and rollbacks for one invocation."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.model_calls = 0
        self.model_failures = 0
        self.rollbacks = 0
        self.input_tokens = 0
        self.output_tokens = 0
        self.model_time = 0.0
        self.tool_time = 0.0
        self._last_report: dict | None = None

    def _event(self, iteration: int, kind: str, **fields) -> None:
        self.events.append({"iteration": iteration, "type": kind, **fields})

    def record_model_call(
        self,
        iteration: int,
        duration: float,
        stop_reason: str | None,
        *,
        input_tokens: int = 0,
        output_tokens: int = 0,
        error: str | None = None,
    ):
        self.model_calls += 1
        self.model_time += duration
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        extra = {"error": error} if error is not None else {}
        if error is not None:
            self.model_failures += 1
        self._event(
            iteration,
            "model_call",
            duration_s=round(duration, 3),
            stop_reason=stop_reason,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            **extra,
        )

    def record_tool_call(
        self,
        iteration: int,
        name: str,
        arguments,
        succeeded: bool,
        duration: float,
        result_length: int,
        error: str | None = None,
    ):
        self.tool_time += duration
        counts = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
        counts["succeeded" if succeeded else "failed"] += 1
        extra = {"error": error} if error is not None else {}
        self._event(
            iteration,
            "tool_call",
            name=name,
            arguments=arguments,
            succeeded=succeeded,
            duration_s=round(duration, 3),
            result_length=result_length,
            **extra,
        )

    def record_rollback(self, iteration: int, turns_removed: int):
        self.rollbacks += 1
        self._event(iteration, "rollback", turns_removed=turns_removed)

    def build_report(
        self,
        *,
        task: str,
        model: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        iterations: int,
        error_message: str | None = None,
        cost_usd: float | None = None,
    ) -> dict:
        succeeded = sum(c["succeeded"] for c in self.tool_stats.values())
        failed = sum(c["failed"] for c in self.tool_stats.values())

        result: dict = {"outcome": outcome, "answer": answer, "exit_code": exit_code}
        if error_message is not None:
            result["error_message"] = error_message

        stats: dict = {
            "iterations": iterations,
            "model_calls": self.model_calls,
            "model_failures": self.model_failures,
            "rollbacks": self.rollbacks,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "tool_calls": succeeded + failed,
            "tool_calls_failed": failed,
            "tools": dict(self.tool_stats),
            "model_time_s": round(self.model_time, 3),
            "tool_time_s": round(self.tool_time, 3),
        }
        if cost_usd is not None:
            stats["cost_usd"] = round(cost_usd, 6)

        return {
            "version": 1,
            "created": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "settings": settings,
            "result": result,
            "stats": stats,
            "timeline": self.events,
        }

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for a later write()."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report

    def write(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            f.write(json.dumps(self._last_report, indent=2) + "\n")
