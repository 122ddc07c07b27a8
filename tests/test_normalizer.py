from __future__ import annotations

import pytest

from callable_engine import ValidationError, build_fingerprint, parse_arguments, stable_stringify, strip_volatile


def test_fingerprint_ignores_volatile_fields_at_any_depth() -> None:
    first = build_fingerprint(
        "search_notes",
        {"query": "roadmap", "timestamp": 1700000000, "filters": [{"tag": "q3", "trace_id": "a"}]},
    )
    second = build_fingerprint(
        "search_notes",
        {"filters": [{"trace_id": "b", "tag": "q3"}], "query": "roadmap", "timestamp": 1700000999},
    )

    assert first == second
    assert len(first) == 64


def test_fingerprint_depends_on_name_and_meaningful_arguments() -> None:
    base = build_fingerprint("get_note", {"note": "n1"})

    assert base != build_fingerprint("get_page", {"note": "n1"})
    assert base != build_fingerprint("get_note", {"note": "n2"})


def test_volatile_key_matching_is_exact() -> None:
    assert strip_volatile({"identifier": 1, "id": 2, "sessionId": 3, "session": 4}) == {"identifier": 1, "session": 4}


def test_stable_stringify_sorts_keys_and_treats_tuples_as_lists() -> None:
    assert stable_stringify({"b": 1, "a": [1, (2, 3)], "c": None}) == '{"a":[1,[2,3]],"b":1,"c":null}'


def test_unserializable_arguments_raise_validation_error() -> None:
    with pytest.raises(ValidationError) as excinfo:
        build_fingerprint("get_note", {"tags": {"a", "b"}})

    assert excinfo.value.kind == "VALIDATION_ERROR"
    assert "not serializable" in str(excinfo.value)


def test_parse_arguments_accepts_json_strings_and_drops_nulls() -> None:
    assert parse_arguments('{"query": "x", "limit": null}', "search") == {"query": "x"}
    assert parse_arguments({"query": "x", "page": None}, "search") == {"query": "x"}
    assert parse_arguments("", "search") == {}
    assert parse_arguments(None, "search") == {}


@pytest.mark.parametrize("raw", ["[1, 2]", "{not json", "42"])
def test_parse_arguments_rejects_non_objects(raw: str) -> None:
    with pytest.raises(ValidationError) as excinfo:
        parse_arguments(raw, "search")

    assert "search" in str(excinfo.value)
