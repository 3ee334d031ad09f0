"""Unit tests for truncation and textual JSON repair."""

from __future__ import annotations

import json

import pytest

from questiongen.services.generation.exceptions import RepairFailed
from questiongen.services.generation.json_extractor import (
    CandidateDocument,
    CandidateState,
    extract_json_candidate,
)
from questiongen.services.generation.json_repair import (
    apply_textual_repairs,
    parse_candidate,
    repair_json,
    repair_truncation,
)


SAMPLE_DOCUMENT = {
    "sections": [
        {
            "id": "s1",
            "title": 'Intro "quoted" \\ path',
            "order": 1,
            "questions": [
                {
                    "id": "q1",
                    "label": "Rate it",
                    "type": "scale",
                    "required": True,
                    "scaleConfig": {"min": 1, "max": 5},
                    "options": None,
                    "weight": -2.5e3,
                },
                {"id": "q2", "label": "Why?", "type": "textarea", "required": False},
            ],
        },
        {"id": "s2", "title": "Empty", "questions": []},
    ],
    "metadata": {"fallback": False, "tags": ["a", "b"]},
}


def _structural_counts(text: str) -> tuple[int, int, int, int]:
    opens_obj = closes_obj = opens_arr = closes_arr = 0
    in_string = escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            opens_obj += 1
        elif ch == "}":
            closes_obj += 1
        elif ch == "[":
            opens_arr += 1
        elif ch == "]":
            closes_arr += 1
    return opens_obj, closes_obj, opens_arr, closes_arr


def test_truncated_question_is_dropped_and_containers_closed() -> None:
    truncated = '{"sections":[{"id":"s1","title":"T","questions":[{"id":"q1","label":"L","type"'

    outcome = repair_json(truncated)

    assert outcome.text == '{"sections":[{"id":"s1","title":"T","questions":[]}]}'
    assert outcome.truncation_repaired is True
    assert outcome.value == {"sections": [{"id": "s1", "title": "T", "questions": []}]}


def test_valid_json_is_returned_unchanged() -> None:
    text = json.dumps(SAMPLE_DOCUMENT, indent=2)

    outcome = repair_json(text)

    assert outcome.text == text
    assert outcome.truncation_repaired is False
    assert outcome.notes == []


@pytest.mark.parametrize(
    "text",
    [
        json.dumps(SAMPLE_DOCUMENT),
        '{"sections":[{"id":"s1","title":"T","questions":[{"id":"q1"',
        '{"a": [1, 2,], "b": "x",}',
        '{\n  "id": "s1"\n  "title": "line\nbreak"\n}',
    ],
)
def test_repair_is_idempotent(text: str) -> None:
    once = repair_json(text).text

    assert repair_json(once).text == once


@pytest.mark.parametrize("indent", [None, 2])
def test_recovers_from_truncation_at_every_offset(indent: int | None) -> None:
    full = json.dumps(SAMPLE_DOCUMENT, indent=indent)

    for cut in range(1, len(full) + 1):
        candidate = extract_json_candidate(full[:cut])
        outcome = repair_json(candidate.text)

        assert json.loads(outcome.text) == outcome.value, f"offset {cut}"
        assert isinstance(outcome.value, dict)
        opens_obj, closes_obj, opens_arr, closes_arr = _structural_counts(outcome.text)
        assert (opens_obj, opens_arr) == (closes_obj, closes_arr), f"offset {cut}"


def test_partial_trailing_array_element_is_discarded() -> None:
    text = '{"tags": ["a", "b", "partial'

    assert repair_json(text).value == {"tags": ["a", "b"]}


def test_partial_number_is_discarded_but_complete_literal_kept() -> None:
    assert repair_json('{"n": [1, 22').value == {"n": [1]}
    assert repair_json('{"flags": [true, null').value == {"flags": [True, None]}


def test_truncated_object_keeps_completed_properties() -> None:
    text = '{"meta": {"a": "x", "b": {"c": 1}, "d": "unfinis'

    assert repair_json(text).value == {"meta": {"a": "x", "b": {"c": 1}}}


def test_truncation_report_counts_structure() -> None:
    report = repair_truncation('{"a": [{"b": 1}, {"c"')

    assert report.truncated is True
    assert (report.open_braces, report.close_braces) == (3, 1)
    assert (report.open_brackets, report.close_brackets) == (1, 0)
    assert report.text == '{"a": [{"b": 1}]}'


def test_balanced_text_is_not_touched_by_truncation_pass() -> None:
    text = '{"a": [1, 2,]}'

    report = repair_truncation(text)

    assert report.truncated is False
    assert report.text == text


def test_escapes_raw_newlines_and_tabs_inside_strings() -> None:
    outcome = repair_json('{"label": "line1\nline2\tend"}')

    assert outcome.value == {"label": "line1\nline2\tend"}
    assert outcome.textual_repaired is True


def test_escapes_interior_quotes() -> None:
    outcome = repair_json('{"label": "He said "hi" loudly", "type": "text"}')

    assert outcome.value == {"label": 'He said "hi" loudly', "type": "text"}


def test_inserts_missing_commas_between_values() -> None:
    text = '{\n  "id": "s1"\n  "items": [{"a": 1} {"b": 2}],\n  "tags": [["x"] ["y"]]\n}'

    assert repair_json(text).value == {
        "id": "s1",
        "items": [{"a": 1}, {"b": 2}],
        "tags": [["x"], ["y"]],
    }


def test_removes_trailing_commas() -> None:
    assert repair_json('{"a": [1, 2,], "b": 3,}').value == {"a": [1, 2], "b": 3}


def test_escapes_stray_backslashes() -> None:
    assert repair_json('{"path": "C:\\dir\\new"}').value == {"path": "C:\\dir\new"}
    assert repair_json('{"path": "C:\\dir"}').value == {"path": "C:\\dir"}


def test_strips_control_characters_outside_strings() -> None:
    assert repair_json('{"a": 1,\x00 "b": 2\x07}').value == {"a": 1, "b": 2}


def test_textual_pass_is_identity_on_valid_json() -> None:
    text = json.dumps(SAMPLE_DOCUMENT, indent=2, ensure_ascii=False)

    assert apply_textual_repairs(text) == text


def test_unrepairable_text_raises_with_original_error() -> None:
    with pytest.raises(RepairFailed) as exc_info:
        repair_json('{"sections": nope}')

    error = exc_info.value
    assert error.error_code == "repair_failed"
    assert "position" in error.parse_error
    assert error.preview.startswith('{"sections"')


def test_parse_candidate_moves_to_repaired_state() -> None:
    candidate = CandidateDocument(text='{"sections": [{"id": "s1"')

    result = parse_candidate(candidate)

    assert result.state is CandidateState.REPAIRED
    assert result.truncation_repaired is True
    assert result.value == {"sections": []}
