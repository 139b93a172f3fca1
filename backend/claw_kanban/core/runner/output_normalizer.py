"""
Agent Output Normalizer
=======================

Turns the stream-json logs written by agent CLIs into readable prose.

Three line protocols are understood:
- Claude (``--output-format=stream-json``): system/init, stream_event,
  assistant, result
- Gemini (``--output-format=stream-json``): init, message, tool_use,
  tool_result
- Codex (``exec --json``): thread.started, item.completed, turn.completed

Each record tag maps to a handler that returns fragments tagged with one
of four actions. Text and annotations are stitched into paragraphs;
metadata lines become a header block. Lines that are not JSON objects,
or whose tag is unknown, are skipped, which also drops a truncated
trailing record when only the tail of a log is passed in.

If no record is recognized at all the input is returned unchanged, so
plain-text logs from HTTP agents pass straight through.
"""

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

PARAGRAPH = "\x00"


# ==========================================================================
# Fragments
# ==========================================================================

class Action(str, Enum):
    """What a recognized record contributes to the rendering."""
    TEXT = "text"                # prose, stitched into paragraphs
    ANNOTATION = "annotation"    # bracketed tool/reasoning notes, inline
    META = "meta"                # header line
    IGNORE = "ignore"            # known record with nothing to show


@dataclass(frozen=True)
class Fragment:
    action: Action
    text: str = ""


def _text(value: str) -> list[Fragment]:
    return [Fragment(Action.TEXT, value)]


def _note(value: str) -> list[Fragment]:
    return [Fragment(Action.ANNOTATION, value)]


def _meta(*lines: str) -> list[Fragment]:
    return [Fragment(Action.META, line) for line in lines]


_IGNORED = [Fragment(Action.IGNORE)]

# A handler returns None when the record does not match its tag's shape.
Handler = Callable[[dict[str, Any]], Optional[list[Fragment]]]


def _field(value: Any) -> str:
    return "-" if value is None else str(value)


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


# ==========================================================================
# Claude
# ==========================================================================

def _claude_system(record: dict[str, Any]) -> Optional[list[Fragment]]:
    if record.get("subtype") != "init":
        return None
    lines = [f"[init] cwd={_field(record.get('cwd'))} model={_field(record.get('model'))}"]
    servers = record.get("mcp_servers")
    if isinstance(servers, list):
        failed = [
            f"{s.get('name')}:{s.get('status')}"
            for s in servers
            if isinstance(s, dict) and s.get("status") and s.get("status") != "ok"
        ]
        if failed:
            lines.append(f"[mcp] {', '.join(failed)}")
    return _meta(*lines)


def _claude_stream_event(record: dict[str, Any]) -> Optional[list[Fragment]]:
    event = _dict(record.get("event"))
    if event.get("type") == "content_block_delta":
        delta = _dict(event.get("delta"))
        if delta.get("type") == "text_delta" and delta.get("text"):
            return _text(delta["text"])
    if event.get("type") == "content_block_start":
        block = _dict(event.get("content_block"))
        if block.get("type") == "text" and block.get("text"):
            return _text(block["text"])
    # message_start, content_block_stop, input_json_delta, ...
    return _IGNORED


def _claude_assistant(record: dict[str, Any]) -> Optional[list[Fragment]]:
    content = _dict(record.get("message")).get("content")
    if not isinstance(content, list):
        return None
    return [
        Fragment(Action.TEXT, block["text"])
        for block in content
        if isinstance(block, dict) and block.get("type") == "text" and block.get("text")
    ] or _IGNORED


def _claude_result(record: dict[str, Any]) -> Optional[list[Fragment]]:
    result = record.get("result")
    if not result:
        return None
    return _text(str(result))


# ==========================================================================
# Gemini
# ==========================================================================

def _gemini_init(record: dict[str, Any]) -> Optional[list[Fragment]]:
    if not record.get("session_id"):
        return None
    return _meta(f"[init] session={record['session_id']} model={_field(record.get('model'))}")


def _gemini_message(record: dict[str, Any]) -> Optional[list[Fragment]]:
    if record.get("role") != "assistant" or not record.get("content"):
        return None
    return _text(str(record["content"]))


def _gemini_tool_use(record: dict[str, Any]) -> Optional[list[Fragment]]:
    name = record.get("tool_name")
    if not name:
        return None
    params = _dict(record.get("parameters"))
    target = params.get("file_path") or params.get("command") or ""
    return _note(f"\n[tool: {name}] {target}\n")


def _gemini_tool_result(record: dict[str, Any]) -> Optional[list[Fragment]]:
    status = record.get("status")
    if not status:
        return None
    if status == "success":
        return _IGNORED
    return _note(f"[result: {status}]\n")


# ==========================================================================
# Codex
# ==========================================================================

def _codex_thread_started(record: dict[str, Any]) -> Optional[list[Fragment]]:
    if not record.get("thread_id"):
        return None
    return _meta(f"[thread] {record['thread_id']}")


def _codex_item_completed(record: dict[str, Any]) -> Optional[list[Fragment]]:
    item = record.get("item")
    if not isinstance(item, dict):
        return None

    kind = item.get("type")
    if kind == "agent_message" and item.get("text"):
        return _text(item["text"])
    if kind == "reasoning" and item.get("text"):
        return _note(f"\n[reasoning] {item['text']}\n")
    if kind == "tool_call" and item.get("name"):
        args = ""
        if item.get("arguments"):
            args = json.dumps(item["arguments"], separators=(",", ":"), ensure_ascii=False)[:100]
        return _note(f"\n[tool: {item['name']}] {args}\n")
    if kind == "tool_output" and item.get("output"):
        output = str(item["output"])
        if "error" in output or len(output) < 200:
            return _note(f"[output] {output[:200]}\n")
    return _IGNORED


def _codex_turn_completed(record: dict[str, Any]) -> Optional[list[Fragment]]:
    usage = record.get("usage")
    if not isinstance(usage, dict):
        return None
    return _meta(
        f"[usage] in={_field(usage.get('input_tokens'))} "
        f"out={_field(usage.get('output_tokens'))} "
        f"cached={usage.get('cached_input_tokens') or 0}"
    )


# ==========================================================================
# Tag Table
# ==========================================================================

HANDLERS: dict[str, Handler] = {
    # Claude
    "system": _claude_system,
    "stream_event": _claude_stream_event,
    "assistant": _claude_assistant,
    "result": _claude_result,
    # Gemini
    "init": _gemini_init,
    "message": _gemini_message,
    "tool_use": _gemini_tool_use,
    "tool_result": _gemini_tool_result,
    # Codex
    "thread.started": _codex_thread_started,
    "item.completed": _codex_item_completed,
    "turn.completed": _codex_turn_completed,
}


def _parse_line(line: str) -> Optional[dict[str, Any]]:
    line = line.strip()
    if not line.startswith("{"):
        return None
    try:
        record = json.loads(line)
    except json.JSONDecodeError:
        return None
    return record if isinstance(record, dict) else None


def iter_fragments(raw: str):
    """Yield fragments for every recognized record in ``raw``."""
    for line in raw.splitlines():
        record = _parse_line(line)
        if record is None:
            continue
        handler = HANDLERS.get(record.get("type"))
        if handler is None:
            continue
        fragments = handler(record)
        if fragments is None:
            continue
        yield from fragments


def _stitch(chunks: list[str]) -> str:
    stitched = "".join(chunks)
    stitched = re.sub(r"\n{2,}", PARAGRAPH, stitched)
    stitched = stitched.replace("\n", " ")
    stitched = re.sub(r"\s+", " ", stitched)
    stitched = re.sub(f" ?{PARAGRAPH} ?", "\n\n", stitched)
    return stitched.strip()


def pretty_stream_json(raw: str) -> str:
    """Render an agent log (or any suffix of one) as readable text."""
    chunks: list[str] = []
    meta: list[str] = []
    recognized = False

    for fragment in iter_fragments(raw):
        recognized = True
        if fragment.action == Action.META:
            meta.append(fragment.text)
        elif fragment.action in (Action.TEXT, Action.ANNOTATION):
            chunks.append(fragment.text)

    if not recognized:
        return raw

    head = "\n".join(meta) + "\n\n" if meta else ""
    return head + _stitch(chunks)
