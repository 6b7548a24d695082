import pytest

from chatstream.blocks import ActionType, BlockSequence, BlockStatus, BlockType, MessageBlock, ToolCallRef
from chatstream.cancellation import CancellationToken, is_cancellation_error, throw_if_cancelled
from chatstream.exceptions import USER_CANCELLED_MESSAGE, GenerationCancelledError, GenerationStateError
from chatstream.models import Message, MessageRole
from chatstream.state import GeneratingMessageState, GenerationStateStore, PendingToolCall, TotalUsage


def _state(message_id: str = "m1", conversation_id: str = "c1") -> GeneratingMessageState:
    message = Message(id=message_id, conversation_id=conversation_id, role=MessageRole.ASSISTANT, content=BlockSequence())
    return GeneratingMessageState(message=message, conversation_id=conversation_id)


def test_store_set_get_delete():
    store = GenerationStateStore()
    state = _state()
    store.set("m1", state)

    assert "m1" in store
    assert store.get("m1") is state
    assert store.require("m1") is state
    assert store.delete("m1") is state
    assert store.get("m1") is None
    assert store.delete("m1") is None
    with pytest.raises(GenerationStateError):
        store.require("m1")


def test_find_by_conversation_returns_latest():
    store = GenerationStateStore()
    older, newer, other = _state("m1"), _state("m2"), _state("m3", "c2")
    for state in (older, newer, other):
        store.set(state.message_id, state)

    assert store.find_by_conversation("c1") is newer
    assert store.states_for_conversation("c1") == [older, newer]
    assert store.find_by_conversation("missing") is None


def test_searching_flag_is_cleared_on_delete():
    store = GenerationStateStore()
    store.set("m1", _state())
    store.mark_searching("m1")
    assert store.is_searching("m1")

    store.delete("m1")

    assert not store.is_searching("m1")


def test_awaiting_permission_ignores_agent_requests():
    state = _state()
    block = state.blocks.append(
        MessageBlock(
            type=BlockType.ACTION,
            action_type=ActionType.TOOL_CALL_PERMISSION,
            status=BlockStatus.PENDING,
            extra={"providerId": None},
        )
    )
    assert state.awaiting_permission is True

    block.extra["providerId"] = "acp"
    assert state.awaiting_permission is False

    block.extra["providerId"] = None
    block.status = BlockStatus.GRANTED
    assert state.awaiting_permission is False


def test_pending_tool_call_from_ref():
    ref = ToolCallRef(id="t1", name="write_file", params="{}", server_name="recorded", server_icons="F")

    pending = PendingToolCall.from_tool_call(ref, "canonical")

    assert pending.server_name == "canonical"
    assert pending.server_icons == "F"
    assert pending.is_complete
    assert PendingToolCall.from_tool_call(ref).server_name == "recorded"
    assert not PendingToolCall(id="t1", name="write_file", params="").is_complete


def test_total_usage_from_dict():
    usage = TotalUsage.from_dict({"prompt_tokens": 3, "completion_tokens": "4", "total_tokens": None})

    assert usage.prompt_tokens == 3
    assert usage.completion_tokens == 4
    assert usage.total_tokens == 0


def test_cancellation_token_is_sticky():
    token = CancellationToken()
    token.raise_if_cancelled("m1")

    token.cancel("user")
    token.cancel("again")

    assert token.is_cancelled
    assert token.reason == "user"
    with pytest.raises(GenerationCancelledError):
        token.raise_if_cancelled("m1")


def test_throw_if_cancelled_treats_missing_state_as_cancelled():
    store = GenerationStateStore()
    state = _state()
    store.set("m1", state)

    throw_if_cancelled(store, "m1")
    state.cancel_token.cancel()
    with pytest.raises(GenerationCancelledError):
        throw_if_cancelled(store, "m1")
    with pytest.raises(GenerationCancelledError):
        throw_if_cancelled(store, "gone")


def test_is_cancellation_error():
    assert is_cancellation_error(GenerationCancelledError("m1"))
    assert is_cancellation_error(RuntimeError(USER_CANCELLED_MESSAGE))
    assert not is_cancellation_error(RuntimeError("boom"))
