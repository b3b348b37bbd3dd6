"""数据模型定义。

持久化行（安装记录、部署、运行时事件、策略）与派生视图（有效能力集、
健康状态、诊断报告）统一使用 pydantic 模型：
1. 向前兼容 - 使用 extra='ignore' 忽略未知字段
2. 可序列化 - model_dump(mode="json") 直接写入状态快照
3. 枚举均为 str 子类，可直接与字符串比较
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    # 枚举
    "CapabilityMode",
    "DeploymentStatus",
    "DesiredState",
    "HealthStatus",
    "EventSeverity",
    "InstallSource",
    "InstallationStatus",
    "InstallState",
    "ToolCategory",
    "ToolAction",
    # 版本清单
    "ReleaseAsset",
    "ReleaseManifest",
    # 安装
    "Installation",
    "InstallStatus",
    # 能力
    "CapabilityPolicy",
    "SkillDefinition",
    "ToolDefinition",
    "ConnectorDefinition",
    "CapabilityGates",
    "EffectiveCapabilitySet",
    # 部署
    "DeploymentState",
    "DeploymentSpec",
    "DeploymentUpdate",
    # 运行时
    "RuntimeHealth",
    "RuntimeEvent",
    "EventPage",
    # 诊断
    "DoctorCheck",
    "DoctorReport",
    "ActionResult",
    # 工具函数
    "DEFAULT_WORKSPACE_ID",
    "utcnow",
    "to_epoch_ms",
]

DEFAULT_WORKSPACE_ID = "default"


def utcnow() -> datetime:
    """当前 UTC 时间（带时区）。"""
    return datetime.now(timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    """datetime -> Unix 毫秒时间戳。"""
    return int(value.timestamp() * 1000)


def _new_id() -> str:
    return str(uuid.uuid4())


class CapabilityMode(str, Enum):
    """能力策略模式。

    - GLOBAL_ONLY: 全局条目减去拒绝列表
    - GLOBAL_PLUS_ASSIGNED: 全局 ∪ 指派，减去拒绝列表
    - ASSIGNED_ONLY: 仅指派条目，减去拒绝列表
    - DENY_ALL_EXCEPT_ASSIGNED: 同 ASSIGNED_ONLY，但技能总是按模式解析
    """

    GLOBAL_ONLY = "global_only"
    GLOBAL_PLUS_ASSIGNED = "global_plus_assigned"
    ASSIGNED_ONLY = "assigned_only"
    DENY_ALL_EXCEPT_ASSIGNED = "deny_all_except_assigned"


class DeploymentStatus(str, Enum):
    """部署的观测状态。"""

    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


class DesiredState(str, Enum):
    """操作者期望的状态，决定崩溃后是否重启。"""

    RUNNING = "running"
    STOPPED = "stopped"


class HealthStatus(str, Enum):
    """健康检查分类。"""

    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class EventSeverity(str, Enum):
    """运行时事件严重级别。"""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class InstallSource(str, Enum):
    """安装来源。"""

    MANAGED = "managed"
    EXTERNAL = "external"


class InstallationStatus(str, Enum):
    """单条安装记录的状态。"""

    INSTALLED = "installed"
    ERROR = "error"


class InstallState(str, Enum):
    """安装器整体状态（由活动 + 安装记录推导）。"""

    INSTALLING = "installing"
    INSTALLED = "installed"
    ERROR = "error"
    NOT_INSTALLED = "not_installed"


class ToolCategory(str, Enum):
    FILESYSTEM = "filesystem"
    EXECUTION = "execution"
    NETWORK = "network"
    CONNECTOR = "connector"
    CUSTOM = "custom"


class ToolAction(str, Enum):
    READ = "read"
    WRITE = "write"
    EXEC = "exec"
    POST = "post"


# =============================================================================
# 版本清单
# =============================================================================


class ReleaseAsset(BaseModel):
    """单个平台上的可安装版本。

    Attributes:
        platform: 平台标识（如 darwin-arm64、linux-x64）
        version: 版本号或分支名
        source_url: 源码包下载地址
        source_sha256: 校验和（源码包与已安装二进制共用）
        binary_relative_path: 版本根目录下的二进制相对路径
        build_package: cargo 包名
        build_ref: git 引用（提交哈希或分支名）
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    platform: str
    version: str
    source_url: str | None = None
    source_sha256: str | None = None
    binary_relative_path: str | None = None
    build_package: str | None = None
    build_ref: str | None = None


class ReleaseManifest(BaseModel):
    """版本清单。"""

    model_config = ConfigDict(extra="ignore", frozen=True)

    latest_version: str
    releases: tuple[ReleaseAsset, ...] = ()


# =============================================================================
# 安装
# =============================================================================


class Installation(BaseModel):
    """已安装（或安装失败）的运行时版本记录。

    同一时刻至多一条记录 is_active=True，由存储层保证。
    """

    model_config = ConfigDict(extra="ignore")

    version: str
    source: InstallSource = InstallSource.MANAGED
    install_path: str
    binary_path: str
    checksum: str | None = None
    status: InstallationStatus = InstallationStatus.INSTALLED
    last_error: str | None = None
    installed_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    is_active: bool = False


class InstallStatus(BaseModel):
    """安装器状态快照。"""

    model_config = ConfigDict(extra="ignore")

    state: InstallState
    active_version: str | None = None
    available_versions: list[str] = Field(default_factory=list)
    installations: list[Installation] = Field(default_factory=list)
    last_error: str | None = None
    runtime_root: str


# =============================================================================
# 能力策略
# =============================================================================


class CapabilityPolicy(BaseModel):
    """部署级能力策略。"""

    model_config = ConfigDict(extra="ignore")

    mode: CapabilityMode = CapabilityMode.GLOBAL_ONLY
    include_global_skills: bool = True
    assigned_skill_ids: list[str] = Field(default_factory=list)
    assigned_tool_names: list[str] = Field(default_factory=list)
    assigned_connector_keys: list[str] = Field(default_factory=list)
    denied_tool_names: list[str] = Field(default_factory=list)
    denied_connector_keys: list[str] = Field(default_factory=list)


class SkillDefinition(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    description: str = ""
    path: str | None = None
    allowed_tools: list[str] = Field(default_factory=list)


class ToolDefinition(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    name: str
    display_name: str | None = None
    category: ToolCategory = ToolCategory.CUSTOM
    action: ToolAction = ToolAction.READ
    enabled: bool = True


class ConnectorDefinition(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    key: str
    name: str = ""
    category: str = "custom"
    enabled: bool = True


class CapabilityGates(BaseModel):
    """由有效工具/连接器集合推导的权限闸门。"""

    model_config = ConfigDict(extra="ignore")

    read: bool = False
    write: bool = False
    exec: bool = False
    network: bool = False
    channel: bool = False


class EffectiveCapabilitySet(BaseModel):
    """部署实际可见的能力集合（派生视图，从不手工编辑）。"""

    model_config = ConfigDict(extra="ignore")

    mode: CapabilityMode = CapabilityMode.GLOBAL_ONLY
    skills: list[SkillDefinition] = Field(default_factory=list)
    tools: list[ToolDefinition] = Field(default_factory=list)
    connectors: list[ConnectorDefinition] = Field(default_factory=list)
    gates: CapabilityGates = Field(default_factory=CapabilityGates)


# =============================================================================
# 部署
# =============================================================================


class DeploymentState(BaseModel):
    """部署记录。

    status 为观测值；desired_state 是操作者意图，也是崩溃后是否重启的依据。
    """

    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=_new_id)
    workspace_id: str = DEFAULT_WORKSPACE_ID
    name: str
    description: str | None = None
    runtime_version: str
    workspace_path: str
    model_provider: str
    model_name: str
    status: DeploymentStatus = DeploymentStatus.CREATED
    desired_state: DesiredState = DesiredState.STOPPED
    process_id: int | None = None
    gateway_host: str = "127.0.0.1"
    gateway_port: int
    api_base_url: str
    last_error: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    policy: CapabilityPolicy = Field(default_factory=CapabilityPolicy)
    effective_capabilities: EffectiveCapabilitySet = Field(default_factory=EffectiveCapabilitySet)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class DeploymentSpec(BaseModel):
    """创建部署的输入。"""

    model_config = ConfigDict(extra="ignore")

    workspace_id: str | None = None
    name: str
    description: str | None = None
    runtime_version: str | None = None
    workspace_path: str
    model_provider: str
    model_name: str
    env: dict[str, str] = Field(default_factory=dict)
    gateway_host: str | None = None
    gateway_port: int | None = None
    api_base_url: str | None = None
    policy: dict[str, Any] | None = None
    auto_start: bool = True


class DeploymentUpdate(BaseModel):
    """更新部署的输入。未设置的字段保持不变；policy 为局部覆盖。"""

    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    description: str | None = None
    runtime_version: str | None = None
    workspace_path: str | None = None
    model_provider: str | None = None
    model_name: str | None = None
    gateway_host: str | None = None
    gateway_port: int | None = None
    api_base_url: str | None = None
    desired_state: DesiredState | None = None
    env: dict[str, str] | None = None
    policy: dict[str, Any] | None = None


# =============================================================================
# 运行时
# =============================================================================


class RuntimeHealth(BaseModel):
    """单次健康检查结果。"""

    model_config = ConfigDict(extra="ignore")

    deployment_id: str
    status: HealthStatus = HealthStatus.UNKNOWN
    checked_at: datetime = Field(default_factory=utcnow)
    latency_ms: int | None = None
    detail: dict[str, Any] | None = None
    error: str | None = None


class RuntimeEvent(BaseModel):
    """运行时事件（只追加的审计记录）。"""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=_new_id)
    deployment_id: str
    event_type: str
    severity: EventSeverity = EventSeverity.INFO
    message: str
    payload: dict[str, Any] = Field(default_factory=dict)
    correlation_id: str | None = None
    occurred_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)


class EventPage(BaseModel):
    """分页的事件列表，按 occurred_at 倒序。"""

    model_config = ConfigDict(extra="ignore")

    events: list[RuntimeEvent] = Field(default_factory=list)
    next_cursor: str | None = None


# =============================================================================
# 诊断
# =============================================================================


class DoctorCheck(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    label: str
    ok: bool
    details: str | None = None
    repair_hint: str | None = None


class DoctorReport(BaseModel):
    model_config = ConfigDict(extra="ignore")

    deployment_id: str | None = None
    generated_at: datetime = Field(default_factory=utcnow)
    healthy: bool
    checks: list[DoctorCheck] = Field(default_factory=list)


class ActionResult(BaseModel):
    """不抛异常的操作结果（验证类流程使用）。"""

    model_config = ConfigDict(extra="ignore")

    ok: bool
    message: str
