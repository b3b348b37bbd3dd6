"""能力策略解析。

根据策略模式和指派/拒绝列表，从全局注册表计算部署可见的技能、工具、连接器，
并由有效集合推导权限闸门。所有比较都基于规范化 token（去空白、小写、
空白串折叠为下划线）。

模式语义:
    global_only: 全部条目 - 拒绝列表
    assigned_only / deny_all_except_assigned: (全部 ∩ 指派) - 拒绝列表
    global_plus_assigned: 全部 ∪ 指派（按 token 去重）- 拒绝列表
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping
from typing import Any, TypeVar

from .models import (
    CapabilityGates,
    CapabilityMode,
    CapabilityPolicy,
    ConnectorDefinition,
    EffectiveCapabilitySet,
    ToolAction,
    ToolCategory,
    ToolDefinition,
)
from .registry import CapabilityRegistry

__all__ = [
    "normalize_token",
    "normalize_policy",
    "merge_policy",
    "resolve_capabilities_for_mode",
    "compute_gates",
    "CapabilityPolicyResolver",
]

T = TypeVar("T")

_WHITESPACE_RE = re.compile(r"\s+")
_VALID_MODES = {mode.value for mode in CapabilityMode}


def normalize_token(value: str) -> str:
    """规范化条目 token: "  Web Search " -> "web_search"。"""
    return _WHITESPACE_RE.sub("_", value.strip().lower())


def _dedupe(values: Iterable[str], transform: Callable[[str], str]) -> list[str]:
    """转换并去重，保持首次出现的顺序。"""
    result = dict.fromkeys(transform(value) for value in values)
    return [value for value in result if value]


def normalize_policy(
    policy: CapabilityPolicy | Mapping[str, Any] | None = None,
) -> CapabilityPolicy:
    """规范化策略输入。

    未知模式回退为 global_only；include_global_skills 仅在显式为 False 时关闭；
    工具/连接器名称转为 token，技能 ID 只去除首尾空白。

    Args:
        policy: 完整策略、局部字段字典或 None

    Returns:
        规范化后的 CapabilityPolicy
    """
    if policy is None:
        data: Mapping[str, Any] = {}
    elif isinstance(policy, CapabilityPolicy):
        data = policy.model_dump()
    else:
        data = policy

    mode = data.get("mode")
    mode_value = mode.value if isinstance(mode, CapabilityMode) else mode

    return CapabilityPolicy(
        mode=mode_value if mode_value in _VALID_MODES else CapabilityMode.GLOBAL_ONLY,
        include_global_skills=data.get("include_global_skills") is not False,
        assigned_skill_ids=_dedupe(data.get("assigned_skill_ids") or [], str.strip),
        assigned_tool_names=_dedupe(data.get("assigned_tool_names") or [], normalize_token),
        assigned_connector_keys=_dedupe(
            data.get("assigned_connector_keys") or [], normalize_token
        ),
        denied_tool_names=_dedupe(data.get("denied_tool_names") or [], normalize_token),
        denied_connector_keys=_dedupe(data.get("denied_connector_keys") or [], normalize_token),
    )


def merge_policy(
    existing: CapabilityPolicy, updates: Mapping[str, Any] | None
) -> CapabilityPolicy:
    """局部覆盖已有策略后重新规范化。"""
    merged = existing.model_dump()
    merged.update(updates or {})
    return normalize_policy(merged)


def resolve_capabilities_for_mode(
    mode: CapabilityMode,
    entries: list[T],
    assigned: Iterable[str],
    denied: Iterable[str],
    key: Callable[[T], str],
) -> list[T]:
    """按模式组合全局条目与指派/拒绝列表。

    Args:
        mode: 策略模式
        entries: 全局条目
        assigned: 指派的 token
        denied: 拒绝的 token
        key: 条目 -> 规范化 token

    Returns:
        有效条目列表（保持全局条目顺序）
    """
    assigned_set = {normalize_token(item) for item in assigned}
    denied_set = {normalize_token(item) for item in denied}

    allowed = [entry for entry in entries if key(entry) not in denied_set]
    if mode == CapabilityMode.GLOBAL_ONLY:
        return allowed

    selected = [
        entry
        for entry in entries
        if key(entry) in assigned_set and key(entry) not in denied_set
    ]
    if mode in (CapabilityMode.ASSIGNED_ONLY, CapabilityMode.DENY_ALL_EXCEPT_ASSIGNED):
        return selected

    union: dict[str, T] = {}
    for entry in (*allowed, *selected):
        union[key(entry)] = entry
    return list(union.values())


def compute_gates(
    tools: list[ToolDefinition], connectors: list[ConnectorDefinition]
) -> CapabilityGates:
    """由有效工具/连接器推导权限闸门（不直接读取策略）。"""
    actions = {tool.action for tool in tools}
    categories = {tool.category for tool in tools}
    return CapabilityGates(
        read=ToolAction.READ in actions,
        write=ToolAction.WRITE in actions,
        exec=ToolAction.EXEC in actions,
        network=(
            ToolCategory.NETWORK in categories
            or ToolAction.POST in actions
            or len(connectors) > 0
        ),
        channel=len(connectors) > 0 or ToolCategory.CONNECTOR in categories,
    )


class CapabilityPolicyResolver:
    """从注册表计算部署的有效能力集。"""

    def __init__(self, registry: CapabilityRegistry) -> None:
        self.registry = registry

    def resolve(self, workspace_id: str, policy: CapabilityPolicy) -> EffectiveCapabilitySet:
        skills = self.registry.list_skills()
        tools = [tool for tool in self.registry.list_tools(workspace_id) if tool.enabled]
        connectors = [
            connector
            for connector in self.registry.list_connectors(workspace_id)
            if connector.enabled
        ]

        # assigned_only 且不含全局技能时，技能只取显式指派的 ID
        if policy.include_global_skills or policy.mode != CapabilityMode.ASSIGNED_ONLY:
            effective_skills = resolve_capabilities_for_mode(
                policy.mode,
                skills,
                policy.assigned_skill_ids,
                [],
                lambda entry: normalize_token(entry.id),
            )
        else:
            assigned_ids = set(policy.assigned_skill_ids)
            effective_skills = [entry for entry in skills if entry.id in assigned_ids]

        effective_tools = resolve_capabilities_for_mode(
            policy.mode,
            tools,
            policy.assigned_tool_names,
            policy.denied_tool_names,
            lambda entry: normalize_token(entry.name),
        )
        effective_connectors = resolve_capabilities_for_mode(
            policy.mode,
            connectors,
            policy.assigned_connector_keys,
            policy.denied_connector_keys,
            lambda entry: normalize_token(entry.key),
        )

        return EffectiveCapabilitySet(
            mode=policy.mode,
            skills=effective_skills,
            tools=effective_tools,
            connectors=effective_connectors,
            gates=compute_gates(effective_tools, effective_connectors),
        )
