"""能力注册表接口。

能力解析器只需要三个只读列表：全局技能、工作区工具、工作区连接器。
具体注册表由组合根注入；StaticCapabilityRegistry 用于守护进程默认配置和测试。
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from .models import ConnectorDefinition, SkillDefinition, ToolDefinition

__all__ = ["CapabilityRegistry", "StaticCapabilityRegistry"]


@runtime_checkable
class CapabilityRegistry(Protocol):
    def list_skills(self) -> list[SkillDefinition]: ...

    def list_tools(self, workspace_id: str) -> list[ToolDefinition]: ...

    def list_connectors(self, workspace_id: str) -> list[ConnectorDefinition]: ...


class StaticCapabilityRegistry:
    """固定列表的注册表，所有工作区共享同一份条目。

    列表可直接修改；修改后调用 Manager.refresh_capabilities() 重新计算有效能力集。
    """

    def __init__(
        self,
        skills: list[SkillDefinition] | None = None,
        tools: list[ToolDefinition] | None = None,
        connectors: list[ConnectorDefinition] | None = None,
    ) -> None:
        self.skills = list(skills or [])
        self.tools = list(tools or [])
        self.connectors = list(connectors or [])

    def list_skills(self) -> list[SkillDefinition]:
        return list(self.skills)

    def list_tools(self, workspace_id: str) -> list[ToolDefinition]:
        return list(self.tools)

    def list_connectors(self, workspace_id: str) -> list[ConnectorDefinition]:
        return list(self.connectors)
