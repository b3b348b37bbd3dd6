"""Capability policy resolution tests."""

from __future__ import annotations

import pytest

from sidecar_manager.capabilities import (
    CapabilityPolicyResolver,
    compute_gates,
    merge_policy,
    normalize_policy,
    normalize_token,
    resolve_capabilities_for_mode,
)
from sidecar_manager.models import (
    CapabilityMode,
    CapabilityPolicy,
    ConnectorDefinition,
    SkillDefinition,
    ToolAction,
    ToolCategory,
    ToolDefinition,
)
from sidecar_manager.registry import StaticCapabilityRegistry


def _tool(name: str, action=ToolAction.READ, category=ToolCategory.CUSTOM, enabled=True):
    return ToolDefinition(name=name, action=action, category=category, enabled=enabled)


@pytest.fixture
def registry() -> StaticCapabilityRegistry:
    return StaticCapabilityRegistry(
        skills=[
            SkillDefinition(id="summarize", name="Summarize"),
            SkillDefinition(id="translate", name="Translate"),
        ],
        tools=[
            _tool("read_file", ToolAction.READ, ToolCategory.FILESYSTEM),
            _tool("write_file", ToolAction.WRITE, ToolCategory.FILESYSTEM),
            _tool("shell", ToolAction.EXEC, ToolCategory.EXECUTION),
            _tool("Web Search", ToolAction.READ, ToolCategory.NETWORK),
            _tool("disabled_tool", enabled=False),
        ],
        connectors=[
            ConnectorDefinition(key="slack", name="Slack"),
            ConnectorDefinition(key="github", name="GitHub"),
            ConnectorDefinition(key="email", name="Email", enabled=False),
        ],
    )


def _names(tools) -> list[str]:
    return [tool.name for tool in tools]


def _keys(connectors) -> list[str]:
    return [connector.key for connector in connectors]


class TestNormalize:
    """Test token and policy normalization."""

    def test_normalize_token(self):
        assert normalize_token("  Web   Search ") == "web_search"
        assert normalize_token("READ_FILE") == "read_file"

    def test_defaults(self):
        policy = normalize_policy(None)
        assert policy.mode == CapabilityMode.GLOBAL_ONLY
        assert policy.include_global_skills is True
        assert policy.assigned_tool_names == []

    def test_unknown_mode_falls_back(self):
        assert normalize_policy({"mode": "everything"}).mode == CapabilityMode.GLOBAL_ONLY

    def test_include_global_skills_only_disabled_explicitly(self):
        assert normalize_policy({"include_global_skills": None}).include_global_skills is True
        assert normalize_policy({"include_global_skills": 0}).include_global_skills is True
        assert normalize_policy({"include_global_skills": False}).include_global_skills is False

    def test_lists_deduplicated_and_normalized(self):
        policy = normalize_policy(
            {
                "mode": "assigned_only",
                "assigned_skill_ids": [" summarize ", "summarize", "Translate"],
                "assigned_tool_names": ["Web Search", "web_search", "shell"],
                "denied_connector_keys": ["Slack", "slack "],
            }
        )
        assert policy.mode == CapabilityMode.ASSIGNED_ONLY
        assert policy.assigned_skill_ids == ["summarize", "Translate"]
        assert policy.assigned_tool_names == ["web_search", "shell"]
        assert policy.denied_connector_keys == ["slack"]

    def test_normalize_accepts_model(self):
        policy = CapabilityPolicy(mode=CapabilityMode.ASSIGNED_ONLY, assigned_tool_names=["A B"])
        assert normalize_policy(policy).assigned_tool_names == ["a_b"]

    def test_merge_policy(self):
        existing = normalize_policy({"mode": "assigned_only", "assigned_tool_names": ["shell"]})
        merged = merge_policy(existing, {"denied_tool_names": ["Shell"]})
        assert merged.mode == CapabilityMode.ASSIGNED_ONLY
        assert merged.assigned_tool_names == ["shell"]
        assert merged.denied_tool_names == ["shell"]
        assert merge_policy(existing, None) == existing


class TestModes:
    """Test the four capability modes."""

    ENTRIES = ["a", "b", "c", "d"]

    def _resolve(self, mode, assigned, denied):
        return resolve_capabilities_for_mode(
            mode, list(self.ENTRIES), assigned, denied, normalize_token
        )

    def test_global_only(self):
        assert self._resolve(CapabilityMode.GLOBAL_ONLY, ["a"], ["b"]) == ["a", "c", "d"]

    def test_global_plus_assigned(self):
        assert self._resolve(CapabilityMode.GLOBAL_PLUS_ASSIGNED, ["a"], ["a", "c"]) == ["b", "d"]

    def test_assigned_only_is_assigned_minus_denied(self):
        assert self._resolve(CapabilityMode.ASSIGNED_ONLY, ["a", "b", "x"], ["b"]) == ["a"]

    def test_deny_all_except_assigned(self):
        assert self._resolve(CapabilityMode.DENY_ALL_EXCEPT_ASSIGNED, ["C"], []) == ["c"]


class TestGates:
    def test_empty(self):
        gates = compute_gates([], [])
        assert not any([gates.read, gates.write, gates.exec, gates.network, gates.channel])

    def test_actions_and_categories(self):
        gates = compute_gates(
            [_tool("r"), _tool("w", ToolAction.WRITE), _tool("x", ToolAction.EXEC)], []
        )
        assert (gates.read, gates.write, gates.exec) == (True, True, True)
        assert gates.network is False
        assert gates.channel is False

    def test_network_and_channel(self):
        assert compute_gates([_tool("p", ToolAction.POST)], []).network is True
        assert compute_gates([_tool("n", category=ToolCategory.NETWORK)], []).network is True
        gates = compute_gates([], [ConnectorDefinition(key="slack")])
        assert gates.network is True
        assert gates.channel is True
        assert compute_gates([_tool("c", category=ToolCategory.CONNECTOR)], []).channel is True


class TestResolver:
    """Test effective capability sets computed from a registry."""

    def test_global_only_filters_disabled(self, registry):
        effective = CapabilityPolicyResolver(registry).resolve("default", normalize_policy(None))
        assert _names(effective.tools) == ["read_file", "write_file", "shell", "Web Search"]
        assert _keys(effective.connectors) == ["slack", "github"]
        assert [skill.id for skill in effective.skills] == ["summarize", "translate"]
        assert effective.gates.exec is True
        assert effective.gates.channel is True

    def test_assigned_only(self, registry):
        policy = normalize_policy(
            {
                "mode": "assigned_only",
                "assigned_tool_names": ["web search", "shell", "disabled_tool"],
                "denied_tool_names": ["shell"],
                "assigned_connector_keys": ["github"],
            }
        )
        effective = CapabilityPolicyResolver(registry).resolve("default", policy)
        assert _names(effective.tools) == ["Web Search"]
        assert _keys(effective.connectors) == ["github"]
        assert effective.gates.exec is False
        assert effective.gates.network is True

    def test_assigned_only_without_global_skills(self, registry):
        """Skills are limited to exact assigned IDs."""
        policy = normalize_policy(
            {
                "mode": "assigned_only",
                "include_global_skills": False,
                "assigned_skill_ids": ["translate"],
            }
        )
        effective = CapabilityPolicyResolver(registry).resolve("default", policy)
        assert [skill.id for skill in effective.skills] == ["translate"]

    def test_assigned_only_with_global_skills_uses_mode(self, registry):
        policy = normalize_policy({"mode": "assigned_only", "assigned_skill_ids": ["Summarize"]})
        effective = CapabilityPolicyResolver(registry).resolve("default", policy)
        assert [skill.id for skill in effective.skills] == ["summarize"]

    def test_denied_connectors_removed(self, registry):
        policy = normalize_policy({"denied_connector_keys": ["SLACK"]})
        effective = CapabilityPolicyResolver(registry).resolve("default", policy)
        assert _keys(effective.connectors) == ["github"]
        assert effective.mode == CapabilityMode.GLOBAL_ONLY
