"""内存存储与 JSON 快照存储实现。"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from ..models import (
    CapabilityPolicy,
    DeploymentState,
    EventPage,
    Installation,
    RuntimeEvent,
    to_epoch_ms,
    utcnow,
)
from .base import clamp_limit

__all__ = ["InMemoryRuntimeStore", "JsonFileRuntimeStore"]

logger = logging.getLogger(__name__)


class InMemoryRuntimeStore:
    """进程内存储。

    部署与安装记录按主键保存；事件按写入顺序追加，查询时按 occurred_at 倒序。
    """

    def __init__(self) -> None:
        self._installations: dict[str, Installation] = {}
        self._deployments: dict[str, DeploymentState] = {}
        self._events: list[RuntimeEvent] = []
        self._policies: dict[str, CapabilityPolicy] = {}

    def _persist(self) -> None:
        """写入后回调，内存实现无需落盘。"""

    # ------------------------------------------------------------------
    # 安装记录
    # ------------------------------------------------------------------

    def list_installations(self) -> list[Installation]:
        return sorted(
            (entry.model_copy() for entry in self._installations.values()),
            key=lambda entry: entry.installed_at,
            reverse=True,
        )

    def get_installation(self, version: str) -> Installation | None:
        entry = self._installations.get(version)
        return entry.model_copy() if entry else None

    def get_active_installation(self) -> Installation | None:
        for entry in self._installations.values():
            if entry.is_active:
                return entry.model_copy()
        return None

    def upsert_installation(self, installation: Installation) -> Installation:
        existing = self._installations.get(installation.version)
        record = installation.model_copy(update={"updated_at": utcnow()})
        if existing is not None:
            record.installed_at = existing.installed_at
            record.is_active = installation.is_active or existing.is_active
        self._installations[record.version] = record
        if record.is_active:
            self._deactivate_others(record.version)
        self._persist()
        return record.model_copy()

    def set_active_installation(self, version: str) -> None:
        if version not in self._installations:
            return
        self._installations[version].is_active = True
        self._deactivate_others(version)
        self._persist()

    def _deactivate_others(self, version: str) -> None:
        for key, entry in self._installations.items():
            if key != version and entry.is_active:
                entry.is_active = False

    # ------------------------------------------------------------------
    # 部署
    # ------------------------------------------------------------------

    def list_deployments(self, workspace_id: str | None = None) -> list[DeploymentState]:
        entries = [
            entry.model_copy(deep=True)
            for entry in self._deployments.values()
            if workspace_id is None or entry.workspace_id == workspace_id
        ]
        return sorted(entries, key=lambda entry: entry.created_at)

    def get_deployment(self, deployment_id: str) -> DeploymentState | None:
        entry = self._deployments.get(deployment_id)
        return entry.model_copy(deep=True) if entry else None

    def create_deployment(self, deployment: DeploymentState) -> DeploymentState:
        record = deployment.model_copy(deep=True)
        self._deployments[record.id] = record
        self._persist()
        return record.model_copy(deep=True)

    def update_deployment(
        self, deployment_id: str, changes: dict[str, Any]
    ) -> DeploymentState | None:
        """合并字段更新。changes 中显式给出的 None 会清空对应字段。"""
        existing = self._deployments.get(deployment_id)
        if existing is None:
            return None
        merged = existing.model_dump()
        merged.update(changes)
        merged["updated_at"] = utcnow()
        record = DeploymentState.model_validate(merged)
        self._deployments[deployment_id] = record
        self._persist()
        return record.model_copy(deep=True)

    def delete_deployment(self, deployment_id: str) -> bool:
        removed = self._deployments.pop(deployment_id, None)
        self._policies.pop(deployment_id, None)
        self._events = [e for e in self._events if e.deployment_id != deployment_id]
        self._persist()
        return removed is not None

    # ------------------------------------------------------------------
    # 运行时事件
    # ------------------------------------------------------------------

    def create_event(self, event: RuntimeEvent) -> RuntimeEvent:
        self._events.append(event)
        self._persist()
        return event

    def list_events(
        self,
        deployment_id: str,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> EventPage:
        """按 occurred_at 倒序分页，cursor 为上一页最后一条的毫秒时间戳。"""
        cursor_ms: int | None = None
        if cursor:
            try:
                cursor_ms = int(float(cursor))
            except ValueError:
                cursor_ms = None

        matching = [
            event
            for event in self._events
            if event.deployment_id == deployment_id
            and (cursor_ms is None or to_epoch_ms(event.occurred_at) < cursor_ms)
        ]
        # 稳定排序：同一毫秒内后写入的排在前面
        matching.reverse()
        matching.sort(key=lambda event: to_epoch_ms(event.occurred_at), reverse=True)
        page = matching[: clamp_limit(limit)]

        next_cursor = str(to_epoch_ms(page[-1].occurred_at)) if page else None
        return EventPage(events=page, next_cursor=next_cursor)

    # ------------------------------------------------------------------
    # 策略绑定
    # ------------------------------------------------------------------

    def get_policy(self, deployment_id: str) -> CapabilityPolicy | None:
        policy = self._policies.get(deployment_id)
        return policy.model_copy(deep=True) if policy else None

    def upsert_policy(self, deployment_id: str, policy: CapabilityPolicy) -> None:
        self._policies[deployment_id] = policy.model_copy(deep=True)
        self._persist()


class JsonFileRuntimeStore(InMemoryRuntimeStore):
    """带 JSON 快照的内存存储。

    安装、部署与策略在每次写操作后整体写入临时文件再原子替换；
    事件只追加到同目录的 ``<name>.events.jsonl``，每条一行。
    构造时读取已有快照与事件日志，损坏时记录警告并跳过。
    """

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = path
        self.events_path = path.with_name(f"{path.stem}.events.jsonl")
        self._load()
        self._load_events()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to read state file {self.path}, starting empty: {e}")
            return

        for raw in data.get("installations", []):
            entry = Installation.model_validate(raw)
            self._installations[entry.version] = entry
        for raw in data.get("deployments", []):
            entry = DeploymentState.model_validate(raw)
            self._deployments[entry.id] = entry
        for deployment_id, raw in data.get("policies", {}).items():
            self._policies[deployment_id] = CapabilityPolicy.model_validate(raw)
        logger.debug(f"Loaded state file {self.path}: {len(self._deployments)} deployment(s)")

    def _load_events(self) -> None:
        if not self.events_path.exists():
            return
        try:
            lines = self.events_path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            logger.warning(f"Failed to read event log {self.events_path}: {e}")
            return

        skipped = 0
        for line in lines:
            if not line.strip():
                continue
            try:
                self._events.append(RuntimeEvent.model_validate_json(line))
            except ValueError:
                skipped += 1
        if skipped:
            logger.warning(f"Skipped {skipped} unreadable line(s) in {self.events_path}")
        logger.debug(f"Loaded event log {self.events_path}: {len(self._events)} event(s)")

    def _persist(self) -> None:
        snapshot = {
            "installations": [e.model_dump(mode="json") for e in self._installations.values()],
            "deployments": [e.model_dump(mode="json") for e in self._deployments.values()],
            "policies": {k: v.model_dump(mode="json") for k, v in self._policies.items()},
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(snapshot, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp_path, self.path)

    def create_event(self, event: RuntimeEvent) -> RuntimeEvent:
        """追加事件，只写一行，不重写快照。"""
        self._events.append(event)
        self.events_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.events_path, "a", encoding="utf-8") as f:
            f.write(event.model_dump_json() + "\n")
        return event

    def delete_deployment(self, deployment_id: str) -> bool:
        """删除部署后压缩事件日志，去掉该部署的事件。"""
        removed = super().delete_deployment(deployment_id)
        self._rewrite_events()
        return removed

    def _rewrite_events(self) -> None:
        self.events_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.events_path.with_suffix(self.events_path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            for event in self._events:
                f.write(event.model_dump_json() + "\n")
        os.replace(tmp_path, self.events_path)
