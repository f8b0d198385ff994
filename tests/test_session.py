"""Tests for Session bookkeeping: counters, model switching, cost estimate."""

import pytest

from skiff.history import TextBlock, Turn
from skiff.session import DEFAULT_MODEL, Session, resolve_model


class TestModels:
    @pytest.mark.parametrize(
        "name, expected",
        [
            ("haiku", "claude-3-5-haiku-20241022"),
            ("fast", "claude-3-5-haiku-20241022"),
            ("sonnet", "claude-sonnet-4-20250514"),
            ("SMART", "claude-sonnet-4-20250514"),
            ("claude-opus-x", "claude-opus-x"),
        ],
    )
    def test_resolve_model(self, name, expected):
        assert resolve_model(name) == expected

    def test_switch_model(self):
        s = Session()
        assert s.model == DEFAULT_MODEL
        assert s.switch_model("sonnet") == "claude-sonnet-4-20250514"
        assert s.model == "claude-sonnet-4-20250514"


class TestCounters:
    def test_record_usage(self):
        s = Session()
        s.record_usage(100, 20)
        s.record_usage(50, 5)
        assert (s.input_tokens, s.output_tokens, s.api_calls) == (150, 25, 2)
        assert s.total_tokens == 175

    def test_clear_keeps_totals(self):
        s = Session()
        s.history.append(Turn.user("hi"))
        s.begin_turn()
        s.record_usage(10, 10)
        assert s.clear() == 1
        assert len(s.history) == 0
        assert s.turns == 0
        assert s.api_calls == 1

    def test_compact_delegates(self):
        s = Session()
        for i in range(10):
            s.history.append(Turn.user(str(i)) if i % 2 == 0 else Turn.assistant([TextBlock("a")]))
        assert s.compact() == 3
        assert len(s.history) == 8


class TestCost:
    def test_haiku(self):
        s = Session("claude-3-5-haiku-20241022")
        s.record_usage(1_000_000, 1_000_000)
        assert s.estimate_cost() == pytest.approx(4.8)

    def test_sonnet(self):
        s = Session("claude-sonnet-4-20250514")
        s.record_usage(1_000_000, 100_000)
        assert s.estimate_cost() == pytest.approx(4.5)

    def test_unknown_model_uses_default_prices(self):
        s = Session("some-future-model")
        s.record_usage(1_000_000, 0)
        assert s.estimate_cost() == pytest.approx(0.8)

    def test_stats(self):
        s = Session("claude-test")
        stats = s.stats()
        assert stats["model"] == "claude-test"
        assert stats["history_turns"] == 0
        assert stats["elapsed_s"] >= 0
