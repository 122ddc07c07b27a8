from __future__ import annotations

import pytest

from callable_engine import TimeoutPolicy, infer_category, resolve_config


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("get_note", "READ"),
        ("list_classeurs", "READ"),
        ("Fetch_Page", "READ"),
        ("search_notes", "SEARCH"),
        ("lookup_user", "SEARCH"),
        ("create_note", "WRITE"),
        ("delete_folder", "WRITE"),
        ("execute_sql", "DATABASE"),
        ("transaction_commit", "DATABASE"),
        ("mcp_github_create_issue", "INTEGRATION"),
        ("delegate_research", "AGENT"),
        ("call_research_agent", "AGENT"),
        ("executeAgent", "AGENT"),
        ("create_agent", "WRITE"),
        ("update_agent", "WRITE"),
        ("list_agents", "READ"),
        ("get_agent_config", "READ"),
        ("research_agent", "AGENT"),
        ("summarize", "UNKNOWN"),
    ],
)
def test_infer_category_from_name(name: str, expected: str) -> None:
    assert infer_category(name) == expected


def test_explicit_category_and_callable_type_take_priority() -> None:
    assert infer_category("get_note", "write") == "WRITE"
    assert infer_category("get_note", "not-a-category") == "READ"
    assert infer_category("get_note", None, "agent") == "AGENT"
    assert infer_category("get_note", None, "mcp") == "INTEGRATION"


@pytest.mark.parametrize(
    ("name", "timeout_ms"),
    [
        ("get_note", 5_000),
        ("search_notes", 10_000),
        ("update_note", 10_000),
        ("execute_sql", 15_000),
        ("delegate_research", 120_000),
        ("list_agents", 5_000),
        ("create_agent", 10_000),
        ("summarize", 120_000),
    ],
)
def test_default_timeouts(name: str, timeout_ms: int) -> None:
    assert TimeoutPolicy().resolve(name)[1] == timeout_ms


def test_most_specific_tool_override_wins() -> None:
    policy = TimeoutPolicy(
        overrides=[
            {"pattern": "*", "override": {"timeoutMs": 9000}},
            {"pattern": "get_*", "override": {"timeoutMs": 750}},
            {"pattern": "get_note", "override": {"timeoutMs": 300}},
        ]
    )

    assert policy.resolve("get_note") == ("READ", 300)
    assert policy.resolve("get_page") == ("READ", 750)
    assert policy.resolve("summarize") == ("UNKNOWN", 9000)


def test_overrides_from_config_can_set_category() -> None:
    resolved = resolve_config({"timeouts": {"write": 2500}, "overrides": {"tools": {"slow_*": {"timeoutMs": 50, "category": "WRITE"}}}})
    policy = TimeoutPolicy(resolved["timeouts"], resolved["overrides"])

    assert policy.resolve("slow_sync") == ("WRITE", 50)
    assert policy.resolve("create_note") == ("WRITE", 2500)
