import json

import pytest

from chat_bridge.context import (
    ConversationContext,
    create_coding_conversation_context,
    create_conversation_context,
    estimate_tokens,
)
from chat_bridge.context.manager import TRUNCATION_MARKER
from chat_bridge.domain.models import ChatMessage, ToolCall, ToolResult


def _user(text):
    return ChatMessage(role="user", content=text)


def _words(n_tokens, tag="m"):
    # 4 个字符约 1 个 token
    return (tag + " " * 3) * n_tokens


def test_estimate_tokens_rules():
    assert estimate_tokens("") == 0
    assert estimate_tokens(None) == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2
    plain = "a" * 40
    structured = "{" + "a" * 39
    assert estimate_tokens(structured) >= estimate_tokens(plain)
    assert estimate_tokens("```" + "a" * 37) == 12


def test_recent_scenario_100_tokens():
    ctx = ConversationContext(max_tokens=100, truncation_strategy="recent", min_recent_messages=1)
    ctx.add_message(ChatMessage(role="system", content="You are helpful."))
    for i in range(20):
        ctx.add_message(_user(_words(20, tag=str(i % 10))))
        assert ctx.get_token_count() <= 100
    assert ctx.messages[0].role == "system"
    assert ctx.messages[0].content == "You are helpful."
    assert len([m for m in ctx.messages if m.role != "system"]) >= 1
    assert ctx.messages[-1].content == _words(20, tag="9")


@pytest.mark.parametrize("strategy", ["recent", "sliding_window", "priority_based"])
def test_system_message_survives_every_strategy(strategy):
    ctx = ConversationContext(max_tokens=60, truncation_strategy=strategy, min_recent_messages=1)
    ctx.add_message(ChatMessage(role="system", content="System rules."))
    for i in range(15):
        ctx.add_message(_user(_words(10)))
        ctx.add_message(ChatMessage(role="assistant", content=_words(10)))
        assert ctx.get_token_count() <= 60
    assert ctx.messages[0].content == "System rules."


def test_min_recent_messages_floor():
    ctx = ConversationContext(max_tokens=80, truncation_strategy="recent", min_recent_messages=3)
    for i in range(10):
        ctx.add_message(_user(_words(10, tag=str(i))))
    assert len(ctx.messages) >= 3
    assert [m.content for m in ctx.messages[-3:]] == [_words(10, tag=str(i)) for i in (7, 8, 9)]


def test_sliding_window_keeps_recent_share():
    ctx = ConversationContext(max_tokens=1000, truncation_strategy="sliding_window", min_recent_messages=1)
    ctx.add_message(ChatMessage(role="system", content="sys"))
    for i in range(10):
        ctx.add_message(_user(_words(10, tag=str(i))))
    ctx.update_config(max_tokens=100)
    non_system = [m for m in ctx.messages if m.role != "system"]
    assert len(non_system) == 6
    assert non_system[-1].content == _words(10, tag="9")
    assert ctx.messages[0].role == "system"


def test_priority_based_drops_conversation_before_tool_messages():
    ctx = ConversationContext(max_tokens=1000, truncation_strategy="priority_based", min_recent_messages=1)
    ctx.add_message(ChatMessage(role="system", content="sys"))
    ctx.add_message(ChatMessage(role="tool", content=_words(10, "t"), tool_call_id="c1"))
    for i in range(5):
        ctx.add_message(_user(_words(10, tag=str(i))))
    ctx.update_config(max_tokens=40)
    roles = [m.role for m in ctx.messages]
    assert roles[0] == "system"
    assert "tool" in roles
    assert ctx.get_token_count() <= 40


def test_emergency_path_truncates_content():
    ctx = ConversationContext(max_tokens=30, truncation_strategy="recent", min_recent_messages=1)
    ctx.add_message(_user("x" * 400))
    assert ctx.get_token_count() <= 30
    assert ctx.messages[0].content.endswith(TRUNCATION_MARKER)


def test_emergency_path_never_grows_short_messages():
    ctx = ConversationContext(max_tokens=5, truncation_strategy="recent", min_recent_messages=1)
    ctx.add_message(ChatMessage(role="system", content="You are a helpful assistant."))
    assert ctx.get_token_count() == 5
    ctx.add_message(_user("hi"))
    # "hi" 只占 1 token，换成截断标记反而更长
    assert ctx.messages[-1].content == "hi"
    assert ctx.messages[0].content == TRUNCATION_MARKER
    assert ctx.get_token_count() <= 5


def test_tool_results_latest_protected():
    ctx = ConversationContext(max_tokens=50, preserve_tool_results=True, min_recent_messages=1)
    ctx.add_message(_user("run the tests"))
    for i in range(6):
        ctx.add_tool_result(ToolResult(output=_words(10, tag=str(i)), tool_name="pytest"))
    assert ctx.tool_results
    assert ctx.tool_results[-1].output == _words(10, tag="5")
    assert ctx.get_token_count() <= 50


def test_tool_results_not_counted_without_preserve():
    ctx = ConversationContext(max_tokens=50, preserve_tool_results=False)
    ctx.add_message(_user("hello"))
    before = ctx.get_token_count()
    ctx.add_tool_result(ToolResult(output="x" * 1000, tool_name="cat"))
    assert ctx.get_token_count() == before
    assert len(ctx.tool_results) == 1


def test_get_stats_is_read_only():
    ctx = create_conversation_context(max_tokens=500, system_prompt="sys")
    ctx.add_message(_user("hi"))
    stats = ctx.get_stats()
    assert stats["message_count"] == 2
    assert stats["tool_result_count"] == 0
    assert stats["token_count"] == ctx.get_token_count()
    assert stats["config"]["max_tokens"] == 500
    assert stats["over_budget"] is False
    stats["config"]["max_tokens"] = 1
    assert ctx.max_tokens == 500


def test_serialize_round_trip():
    ctx = ConversationContext(max_tokens=400, truncation_strategy="priority_based", system_prompt="sys")
    ctx.add_message(_user("read a.py"))
    call = ToolCall(id="c1", name="read_file", arguments={"path": "a.py"})
    ctx.add_message(ChatMessage(role="assistant", content="", tool_calls=[call]))
    ctx.add_message(ChatMessage(role="tool", content="print(1)", tool_call_id="c1"))
    ctx.add_tool_result(ToolResult(output="print(1)", tool_name="read_file", parameters={"path": "a.py"}))

    data = json.loads(json.dumps(ctx.serialize()))
    restored = ConversationContext.deserialize(data)
    assert restored.get_token_count() == ctx.get_token_count()
    assert restored.messages == ctx.messages
    assert restored.tool_results == ctx.tool_results
    assert restored.truncation_strategy == "priority_based"
    assert restored.system_prompt == "sys"
    assert restored.created_at == ctx.created_at


def test_clone_is_independent():
    ctx = ConversationContext(max_tokens=400)
    ctx.add_message(_user("one"))
    copy = ctx.clone()
    copy.add_message(_user("two"))
    assert len(ctx.messages) == 1
    assert len(copy.messages) == 2


def test_update_system_prompt_and_clear():
    ctx = ConversationContext(max_tokens=400, system_prompt="old")
    ctx.add_message(_user("hi"))
    ctx.update_system_prompt("new")
    assert ctx.messages[0].content == "new"
    ctx.clear()
    assert [m.content for m in ctx.messages] == ["new"]
    assert ctx.tool_results == []


def test_invalid_inputs():
    with pytest.raises(ValueError):
        ConversationContext(max_tokens=0)
    with pytest.raises(ValueError):
        ConversationContext(truncation_strategy="random")
    ctx = ConversationContext(max_tokens=100)
    with pytest.raises(ValueError):
        ctx.add_message(ChatMessage(role="robot", content="beep"))
    with pytest.raises(ValueError):
        ctx.update_config(colour="blue")


def test_coding_context_defaults():
    ctx = create_coding_conversation_context()
    assert ctx.max_tokens == 6000
    assert ctx.truncation_strategy == "priority_based"
    assert ctx.min_recent_messages == 4
    assert ctx.messages[0].role == "system"
    assert "coding assistant" in ctx.messages[0].content
    assert create_coding_conversation_context(max_tokens=8000).max_tokens == 8000
