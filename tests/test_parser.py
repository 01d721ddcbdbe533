import json
import time

import pytest

from gdbcopilot.core.parser import EMPTY_REPLY_TEXT, iter_json_objects, parse_reply, strip_fence
from gdbcopilot.core.state import ParseStrategy


def test_full_json_is_preferred():
    raw = json.dumps({"text": "Let's look at main.", "gdbCommands": ["break main", "run"], "waitForOutput": False})
    block = parse_reply(raw)
    assert block.strategy is ParseStrategy.FULL_JSON
    assert block.text == "Let's look at main."
    assert block.commands == ["break main", "run"]
    assert block.wait_for_output is False


def test_fenced_json():
    raw = '```json\n{"text": "fenced", "gdbCommands": ["bt"], "waitForOutput": true}\n```'
    block = parse_reply(raw)
    assert block.strategy is ParseStrategy.FENCED
    assert block.text == "fenced"
    assert block.commands == ["bt"]
    assert block.wait_for_output is True


def test_embedded_json_in_prose():
    raw = 'Sure! Here is the plan:\n{"text":"ok","gdbCommands":[],"waitForOutput":false}\nThanks'
    block = parse_reply(raw)
    assert block.strategy is ParseStrategy.EXTRACTED
    assert block.text == "ok"
    assert block.commands == []


def test_embedded_json_with_braces_inside_strings():
    raw = 'plan: {"text": "print {x}", "gdbCommands": ["p {int}0x1"], "waitForOutput": false} done'
    block = parse_reply(raw)
    assert block.strategy is ParseStrategy.EXTRACTED
    assert block.text == "print {x}"
    assert block.commands == ["p {int}0x1"]


def test_later_object_used_when_first_is_not_an_action_block():
    raw = 'config {"a": 1} then {"text": "second", "gdbCommands": [], "waitForOutput": false}'
    assert parse_reply(raw).text == "second"


def test_empty_text_is_invalid():
    raw = json.dumps({"text": "   ", "gdbCommands": ["bt"], "waitForOutput": True})
    block = parse_reply(raw)
    assert block.strategy is ParseStrategy.FALLBACK
    assert block.text == raw
    assert block.commands == []


def test_wrong_types_fall_back():
    raw = json.dumps({"text": "hi", "gdbCommands": "bt", "waitForOutput": False})
    assert parse_reply(raw).is_fallback


def test_missing_optional_fields_default():
    block = parse_reply('{"text": "just text"}')
    assert block.strategy is ParseStrategy.FULL_JSON
    assert block.commands == []
    assert block.wait_for_output is False


@pytest.mark.parametrize("raw", ["", "   ", None, "{", "}{", "plain words", '{"text": 1}', "[1, 2]"])
def test_parser_never_returns_empty_text(raw):
    block = parse_reply(raw)
    assert block.text.strip()
    if raw is None or not raw.strip():
        assert block.text == EMPTY_REPLY_TEXT


def test_fallback_keeps_raw_reply():
    raw = "I'll run `info breakpoints`."
    block = parse_reply(raw)
    assert block.is_fallback
    assert block.text == raw
    assert block.wait_for_output is False


def test_strip_fence_helpers():
    assert strip_fence("no fence") is None
    assert strip_fence("```\n{}\n```") == "{}"
    assert list(iter_json_objects('x {"a": {"b": 1}} y {')) == ['{"a": {"b": 1}}', '{"b": 1}']


def test_commands_pass_through_unchanged():
    payload = {"text": "registers", "gdbCommands": [" info registers ", ""], "waitForOutput": True}
    block = parse_reply(json.dumps(payload))
    assert block.text == payload["text"]
    assert block.commands == payload["gdbCommands"]
    assert block.wait_for_output is True


def test_unbalanced_reply_is_parsed_in_linear_time():
    started = time.monotonic()
    block = parse_reply("{" * 20000)
    assert block.is_fallback
    deep = parse_reply("{" * 5000 + "}" * 5000)
    assert deep.is_fallback
    assert time.monotonic() - started < 2.0


def test_object_after_unclosed_brace_is_found():
    raw = 'partial { oops {"text": "inner", "gdbCommands": ["bt"], "waitForOutput": false}'
    block = parse_reply(raw)
    assert block.strategy is ParseStrategy.EXTRACTED
    assert block.commands == ["bt"]
