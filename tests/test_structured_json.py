from parley.utils.structured_json import (
    close_unbalanced,
    extract_json_fragment,
    parse_structured_json,
    sanitize_payload,
)


def test_strict_payload_parses_on_first_stage():
    result = parse_structured_json('{"a": 1, "b": [true, null]}')
    assert result.ok
    assert result.stage == "strict"
    assert result.value == {"a": 1, "b": [True, None]}


def test_code_fence_and_sentinel_tokens_are_stripped():
    raw = '<|begin_of_text|>```json\n{"messages": []}\n```<|eot_id|>'
    assert sanitize_payload(raw) == '{"messages": []}'
    result = parse_structured_json(raw)
    assert result.ok
    assert result.stage == "strict"


def test_trailing_commas_and_surrounding_prose_are_repaired():
    raw = 'Sure! Here you go: {"score": 0.5, "items": [1, 2,],} hope that helps'
    result = parse_structured_json(raw)
    assert result.ok
    assert result.stage == "repaired"
    assert result.value == {"score": 0.5, "items": [1, 2]}


def test_truncated_output_gets_missing_closers():
    assert close_unbalanced('{"a": [1, 2') == '{"a": [1, 2]}'
    result = parse_structured_json('{"messages": [{"sequence": 1, "content": "hi"}')
    assert result.ok
    assert result.value == {"messages": [{"sequence": 1, "content": "hi"}]}


def test_python_style_literals_are_relaxed():
    result = parse_structured_json("{'should_respond': True, 'target': None, score: 0.7}")
    assert result.ok
    assert result.stage == "relaxed"
    assert result.value == {"should_respond": True, "target": None, "score": 0.7}


def test_fragment_extraction_ignores_brackets_inside_strings():
    text = 'noise {"text": "a } b", "n": 1} tail {"other": 2}'
    assert extract_json_fragment(text) == '{"text": "a } b", "n": 1}'


def test_garbage_and_empty_input_fail_with_reason():
    garbage = parse_structured_json("not json at all")
    assert not garbage.ok
    assert garbage.stage == "failed"
    assert garbage.reason

    empty = parse_structured_json("   ")
    assert not empty.ok
    assert empty.reason == "empty payload"
