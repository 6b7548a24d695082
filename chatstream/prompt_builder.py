"""Provider prompt assembly under a token budget."""

import json
import math
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Iterable

from chatstream.blocks import BlockSequence, BlockType, MessageBlock
from chatstream.logging import get_logger
from chatstream.message_content import (
    EnrichedLink,
    build_user_message_context,
    format_user_message_content,
    get_link_context,
    image_parts,
)
from chatstream.models import Conversation, Message, MessageRole, MessageStatus, SearchResult
from chatstream.state import PendingToolCall
from chatstream.tools.registry import ToolDefinition

log = get_logger(__name__)

ChatMessage = dict[str, Any]

FOLLOW_UP_AFTER_TOOL = (
    "The tool call above and its response have been inserted for you. "
    "Read the tool response carefully and continue your answer."
)


def _is_cjk(char: str) -> bool:
    code = ord(char)
    return (
        0x4E00 <= code <= 0x9FFF
        or 0x3400 <= code <= 0x4DBF
        or 0x3040 <= code <= 0x30FF
        or 0xAC00 <= code <= 0xD7AF
        or 0xF900 <= code <= 0xFAFF
    )


def approximate_token_size(text: str) -> int:
    """Rough token count: one per CJK character plus one per four other characters.

    Monotonic in the input: appending text never lowers the estimate.
    """
    if not text:
        return 0
    cjk = sum(1 for char in text if _is_cjk(char))
    return cjk + math.ceil((len(text) - cjk) / 4)


def _content_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    return "".join(
        str(part.get("text") or "") for part in content if isinstance(part, dict) and part.get("type") == "text"
    )


def message_tokens(message: ChatMessage) -> int:
    tokens = approximate_token_size(_content_text(message.get("content")))
    for call in message.get("tool_calls") or []:
        function = call.get("function") or {}
        tokens += approximate_token_size(str(function.get("name") or ""))
        tokens += approximate_token_size(str(function.get("arguments") or ""))
    return tokens


def messages_tokens(messages: Iterable[ChatMessage]) -> int:
    return sum(message_tokens(message) for message in messages)


def context_message_limit(context_length: int, chars_per_message: int = 300, min_messages: int = 2) -> int:
    """How many history messages to load for a context window of ``context_length``."""
    return max(math.ceil(context_length / max(1, chars_per_message)), min_messages)


def enhance_system_prompt_with_datetime(system_prompt: str, now: datetime | None = None) -> str:
    if not system_prompt or not system_prompt.strip():
        return system_prompt
    moment = (now or datetime.now().astimezone())
    stamp = moment.strftime("%B %d, %Y, %H:%M:%S %Z").strip()
    return f"{system_prompt}\nToday is {stamp}"


def _user_context_text(message: Message) -> str:
    content = message.user_content
    return build_user_message_context(format_user_message_content(content), content.files)


def add_context_messages(
    messages: list[Message],
    vision: bool,
    supports_function_call: bool,
) -> list[ChatMessage]:
    """Render stored messages as provider chat messages.

    With function calling, completed tool calls become an assistant
    ``tool_calls`` entry plus one ``tool`` message per response; calls without
    a response are left out so every call has its answer.
    """
    result: list[ChatMessage] = []
    for message in messages:
        if message.role == MessageRole.USER:
            text = _user_context_text(message)
            images = image_parts(message.user_content.files) if vision else []
            if images:
                result.append({"role": "user", "content": [*images, {"type": "text", "text": text}]})
            else:
                result.append({"role": "user", "content": text})
            continue

        if message.role != MessageRole.ASSISTANT:
            result.append({"role": message.role.value, "content": json.dumps(message.content_to_dict())})
            continue

        blocks = message.blocks
        if not supports_function_call:
            text = "\n".join(b.content for b in blocks if b.type == BlockType.CONTENT and b.content)
            if text:
                result.append({"role": "assistant", "content": text})
            continue

        texts: list[str] = []
        tool_calls: list[dict[str, Any]] = []
        responses: list[ChatMessage] = []
        for block in blocks:
            if block.type == BlockType.TOOL_CALL and block.tool_call is not None:
                if not block.tool_call.response:
                    continue
                call_id = block.tool_call.id or uuid.uuid4().hex[:8]
                tool_calls.append({
                    "id": call_id,
                    "type": "function",
                    "function": {"name": block.tool_call.name, "arguments": block.tool_call.params or ""},
                })
                responses.append({"role": "tool", "tool_call_id": call_id, "content": block.tool_call.response})
            elif block.type == BlockType.CONTENT and block.content:
                texts.append(block.content)

        if tool_calls:
            entry: ChatMessage = {"role": "assistant", "tool_calls": tool_calls}
            if texts:
                entry["content"] = "\n".join(texts)
            result.append(entry)
            result.extend(responses)
        elif texts:
            result.append({"role": "assistant", "content": "\n".join(texts)})
    return result


def _strip_tool_calls(message: Message) -> tuple[Message, int]:
    """Copy of an assistant message without tool call blocks, and the tokens saved."""
    kept: list[MessageBlock] = []
    removed = 0
    for block in message.blocks:
        if block.type == BlockType.TOOL_CALL and block.tool_call is not None:
            removed += approximate_token_size(block.tool_call.name)
            removed += approximate_token_size(block.tool_call.params)
            removed += approximate_token_size(block.tool_call.response or "")
            continue
        kept.append(block)
    return replace(message, content=BlockSequence(kept)), removed


def select_context_messages(
    context_messages: list[Message],
    user_message: Message,
    remaining_tokens: int,
    supports_function_call: bool = True,
    vision: bool = False,
) -> list[Message]:
    """Choose history that fits ``remaining_tokens``, oldest first.

    Only ``sent`` messages qualify. When over budget, tool calls are dropped
    from older assistant messages first, then the oldest user/assistant pairs.
    The result never contains an assistant whose user message was dropped and
    always starts with a user message.
    """
    if remaining_tokens <= 0:
        return []

    # Newest first while trimming.
    selected = [
        message
        for message in reversed(context_messages)
        if message.id != user_message.id and message.status == MessageStatus.SENT
    ]
    if not selected:
        return []

    total = messages_tokens(add_context_messages(selected, vision, supports_function_call))
    if total > remaining_tokens and supports_function_call:
        excess = total - remaining_tokens
        removed = 0
        # Oldest assistants first; the newest exchange keeps its tool calls.
        last_user = next((i for i, m in enumerate(selected) if m.role == MessageRole.USER), None)
        for index in range(len(selected) - 1, -1, -1):
            if removed >= excess:
                break
            if last_user is not None and index <= last_user:
                break
            if selected[index].role != MessageRole.ASSISTANT:
                continue
            selected[index], saved = _strip_tool_calls(selected[index])
            removed += saved
        total = messages_tokens(add_context_messages(selected, vision, supports_function_call))

    while total > remaining_tokens and selected:
        user_indexes = [i for i, m in enumerate(selected) if m.role == MessageRole.USER]
        if len(user_indexes) <= 1:
            break
        oldest_user_index = user_indexes[-1]
        oldest_user = selected[oldest_user_index]
        assistants = sorted(
            (
                i for i, m in enumerate(selected)
                if m.role == MessageRole.ASSISTANT and m.parent_id == oldest_user.id
            ),
            key=lambda i: selected[i].is_variant,
        )
        if not assistants:
            del selected[oldest_user_index]
        else:
            start = min(oldest_user_index, assistants[0])
            end = max(oldest_user_index, assistants[0])
            log.debug("Dropping oldest exchange from context", user_message_id=oldest_user.id)
            del selected[start:end + 1]
        total = messages_tokens(add_context_messages(selected, vision, supports_function_call))

    user_ids = {m.id for m in selected if m.role == MessageRole.USER}
    selected = [
        m for m in selected
        if m.role != MessageRole.ASSISTANT or (m.parent_id is not None and m.parent_id in user_ids)
    ]

    chronological = list(reversed(selected))
    while chronological and chronological[0].role != MessageRole.USER:
        chronological.pop(0)
    return chronological


def merge_consecutive_messages(messages: list[ChatMessage]) -> list[ChatMessage]:
    """Merge neighbouring messages of the same role.

    ``tool`` messages never merge, and assistant messages merge only when
    neither carries tool calls.
    """
    merged: list[ChatMessage] = []
    for raw in messages:
        current = json.loads(json.dumps(raw))
        if not merged:
            merged.append(current)
            continue
        last = merged[-1]
        mergeable = last["role"] == current["role"] and current["role"] != "tool"
        if mergeable and current["role"] == "assistant":
            mergeable = not last.get("tool_calls") and not current.get("tool_calls")
        if not mergeable:
            merged.append(current)
            continue

        previous = last.get("content")
        incoming = current.get("content")
        if previous is None or incoming is None:
            combined = previous if incoming is None else incoming
        elif isinstance(previous, str) and isinstance(incoming, str):
            combined = f"{previous}\n{incoming}" if previous and incoming else (previous or incoming)
        elif isinstance(previous, list) and isinstance(incoming, list):
            combined = [*previous, *incoming]
        else:
            merged.append(current)
            continue
        if combined in ("", []):
            last.pop("content", None)
        else:
            last["content"] = combined
    return merged


def build_search_prompt(query: str, results: list[SearchResult]) -> str:
    """User content augmented with search results to cite."""
    rendered = []
    for index, result in enumerate(results, start=1):
        rendered.append(
            f"[{index}] {result.title}\nURL: {result.url}\n{result.content or result.description}"
        )
    return (
        "Use the search results below to answer. Cite sources as [n].\n\n"
        "<search_results>\n" + "\n\n".join(rendered) + "\n</search_results>\n\n"
        f"Question: {query}"
    )


@dataclass
class PromptContent:
    messages: list[ChatMessage]
    prompt_tokens: int


def prepare_prompt_content(
    conversation: Conversation,
    user_message: Message,
    user_content: str,
    context_messages: list[Message],
    *,
    tool_definitions: list[ToolDefinition] | None = None,
    links: list[EnrichedLink] | None = None,
    search_results: list[SearchResult] | None = None,
    vision: bool = False,
    supports_function_call: bool = True,
) -> PromptContent:
    """Build the final provider messages for a user turn.

    System prompt, user content (with file, link and search context) and
    tool definitions are reserved first; history fills what is left.
    """
    settings = conversation.settings
    system_prompt = enhance_system_prompt_with_datetime(settings.system_prompt)

    final_user = user_content
    if search_results:
        final_user = build_search_prompt(user_content, search_results)
    final_user = build_user_message_context(final_user, user_message.user_content.files)
    link_context = get_link_context(links or [])
    if link_context:
        final_user = f"{final_user}\n\n{link_context}"

    reserved = approximate_token_size(system_prompt) + approximate_token_size(final_user)
    reserved += sum(approximate_token_size(json.dumps(tool.to_function())) for tool in tool_definitions or [])
    remaining = settings.context_length - reserved

    selected = select_context_messages(
        context_messages, user_message, remaining, supports_function_call, vision
    )

    formatted: list[ChatMessage] = []
    if system_prompt:
        formatted.append({"role": "system", "content": system_prompt})
    formatted.extend(add_context_messages(selected, vision, supports_function_call))

    images = image_parts(user_message.user_content.files) if vision else []
    if images:
        formatted.append({"role": "user", "content": [*images, {"type": "text", "text": final_user.strip()}]})
    else:
        formatted.append({"role": "user", "content": final_user.strip()})

    merged = merge_consecutive_messages(formatted)
    prompt_tokens = messages_tokens(merged)
    prompt_tokens += sum(item.token for item in user_message.user_content.files if item.is_image) if images else 0
    return PromptContent(messages=merged, prompt_tokens=prompt_tokens)


def _base_context(
    conversation: Conversation,
    context_messages: list[Message],
    user_message: Message,
    supports_function_call: bool,
) -> list[ChatMessage]:
    formatted: list[ChatMessage] = []
    system_prompt = conversation.settings.system_prompt
    if system_prompt:
        formatted.append({"role": "system", "content": enhance_system_prompt_with_datetime(system_prompt)})
    formatted.extend(add_context_messages(context_messages, False, supports_function_call))
    formatted.append({"role": "user", "content": _user_context_text(user_message)})
    return formatted


def build_continue_tool_call_context(
    conversation: Conversation,
    context_messages: list[Message],
    user_message: Message,
    tool_call: PendingToolCall,
    supports_function_call: bool = True,
) -> list[ChatMessage]:
    """Messages that tell the model a permission was granted and it may proceed."""
    formatted = _base_context(conversation, context_messages, user_message, supports_function_call)
    if supports_function_call:
        formatted.append({
            "role": "assistant",
            "tool_calls": [{
                "id": tool_call.id,
                "type": "function",
                "function": {"name": tool_call.name, "arguments": tool_call.params},
            }],
        })
        formatted.append({
            "role": "user",
            "content": f"Permission granted to call {tool_call.name}. Proceed with execution.",
        })
    else:
        formatted.append({
            "role": "assistant",
            "content": f"I need to call the {tool_call.name} function with the following parameters: {tool_call.params}",
        })
        formatted.append({
            "role": "user",
            "content": f"Permission has been granted for the {tool_call.name} function. Please proceed with the execution.",
        })
    return formatted


def collect_assistant_text_before(blocks: BlockSequence | None, tool_call_id: str | None = None) -> str:
    """Content and reasoning text that precedes the action block of a tool call."""
    if blocks is None:
        return ""
    parts: list[str] = []
    for block in blocks:
        if block.type == BlockType.ACTION and (
            block.is_permission_action
            or (tool_call_id is not None and block.tool_call is not None and block.tool_call.id == tool_call_id)
        ):
            break
        if block.type in (BlockType.CONTENT, BlockType.REASONING) and block.content:
            parts.append(block.content)
    return "".join(parts)


def build_post_tool_execution_context(
    conversation: Conversation,
    context_messages: list[Message],
    user_message: Message,
    current_assistant: Message | None,
    tool_call: PendingToolCall,
    response: str,
    supports_function_call: bool = True,
) -> list[ChatMessage]:
    """Messages that fold a completed (or failed) tool call back into the conversation."""
    formatted = _base_context(conversation, context_messages, user_message, supports_function_call)

    preface = collect_assistant_text_before(
        current_assistant.blocks if current_assistant is not None else None,
        tool_call.id,
    )
    if preface.strip():
        formatted.append({"role": "assistant", "content": preface})

    if supports_function_call:
        formatted.append({
            "role": "assistant",
            "tool_calls": [{
                "id": tool_call.id,
                "type": "function",
                "function": {"name": tool_call.name, "arguments": tool_call.params},
            }],
        })
        formatted.append({"role": "tool", "tool_call_id": tool_call.id, "content": response})
    else:
        record = json.dumps(
            {"function_call_record": {"name": tool_call.name, "arguments": tool_call.params, "response": response}},
            ensure_ascii=False,
        )
        formatted.append({"role": "assistant", "content": f"<function_call>{record}</function_call>\n"})
        formatted.append({"role": "user", "content": [{"type": "text", "text": FOLLOW_UP_AFTER_TOOL}]})
    return formatted
