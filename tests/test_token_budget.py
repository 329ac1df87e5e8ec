from __future__ import annotations

from relay.orchestration.token_budget import trim_to_budget
from relay.utils.tokens import approx_tokens, approx_tokens_messages, message_tokens


def _conv(n: int, size: int = 40):
    msgs = [{"role": "system", "content": "S" * size}]
    for i in range(n):
        role = "user" if i % 2 == 0 else "assistant"
        msgs.append({"role": role, "content": f"{i:03d}" + "x" * size})
    return msgs


def test_approx_tokens_ratio() -> None:
    assert approx_tokens("") == 0
    assert approx_tokens("abcd") == 1
    assert approx_tokens("abcde") == 2


def test_estimate_is_sum_of_messages() -> None:
    msgs = _conv(5)
    assert approx_tokens_messages(msgs) == sum(message_tokens(m) for m in msgs)


def test_under_budget_returns_same_list() -> None:
    msgs = _conv(3)
    assert trim_to_budget(msgs, 10_000) is msgs


def test_drops_oldest_non_system_first() -> None:
    msgs = _conv(6)
    budget = approx_tokens_messages(msgs) - 1
    out = trim_to_budget(msgs, budget)
    assert out[0] == msgs[0]
    assert out == [msgs[0]] + msgs[2:]
    assert approx_tokens_messages(out) <= budget


def test_never_drops_system_and_never_grows() -> None:
    msgs = _conv(4)
    msgs.insert(3, {"role": "system", "content": "second system"})
    out = trim_to_budget(msgs, 1)
    assert [m for m in out if m["role"] == "system"] == [m for m in msgs if m["role"] == "system"]
    assert all(m["role"] == "system" for m in out)
    assert len(out) <= len(msgs)


def test_preserves_relative_order() -> None:
    msgs = _conv(8)
    out = trim_to_budget(msgs, approx_tokens_messages(msgs) // 2)
    positions = [msgs.index(m) for m in out]
    assert positions == sorted(positions)


def test_trim_is_idempotent() -> None:
    msgs = _conv(10)
    for budget in (1, 30, 60, 120, 10_000):
        once = trim_to_budget(msgs, budget)
        assert trim_to_budget(once, budget) == once
