"""存储层测试。

测试覆盖:
- 安装记录 upsert 与唯一活动版本
- 部署合并更新、按工作区过滤、级联删除
- 事件倒序分页（cursor / limit 钳制）
- JSON 快照持久化与损坏快照恢复
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from sidecar_manager.models import (
    CapabilityMode,
    CapabilityPolicy,
    DeploymentStatus,
    Installation,
    RuntimeEvent,
    to_epoch_ms,
)
from sidecar_manager.store import InMemoryRuntimeStore, JsonFileRuntimeStore, RuntimeStore
from sidecar_manager.store.base import clamp_limit

BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _installation(version: str, *, active: bool = False) -> Installation:
    return Installation(
        version=version,
        install_path=f"/runtime/{version}",
        binary_path=f"/runtime/{version}/bin/zeroclaw",
        is_active=active,
    )


def _event(deployment_id: str, seconds: int, message: str = "") -> RuntimeEvent:
    return RuntimeEvent(
        deployment_id=deployment_id,
        event_type="stdout",
        message=message or f"event {seconds}",
        occurred_at=BASE_TIME + timedelta(seconds=seconds),
    )


class TestClampLimit:
    @pytest.mark.parametrize(
        "limit,expected", [(None, 100), (0, 100), (-5, 1), (1, 1), (250, 250), (501, 500), (10_000, 500)]
    )
    def test_clamp(self, limit, expected):
        assert clamp_limit(limit) == expected


class TestInstallations:
    """测试安装记录。"""

    def test_protocol(self, store):
        assert isinstance(store, RuntimeStore)

    def test_single_active(self, store):
        store.upsert_installation(_installation("v1", active=True))
        store.upsert_installation(_installation("v2", active=True))

        active = store.get_active_installation()
        assert active is not None and active.version == "v2"
        assert [entry.version for entry in store.list_installations() if entry.is_active] == ["v2"]

        store.set_active_installation("v1")
        assert store.get_active_installation().version == "v1"
        assert store.get_installation("v2").is_active is False

    def test_upsert_keeps_active_flag(self, store):
        """重新写入同一版本时保留已有的活动标记与安装时间。"""
        first = store.upsert_installation(_installation("v1", active=True))
        updated = store.upsert_installation(_installation("v1").model_copy(update={"checksum": "abc"}))
        assert updated.is_active is True
        assert updated.checksum == "abc"
        assert updated.installed_at == first.installed_at

    def test_set_active_unknown_version(self, store):
        store.upsert_installation(_installation("v1", active=True))
        store.set_active_installation("missing")
        assert store.get_active_installation().version == "v1"

    def test_returns_copies(self, store):
        store.upsert_installation(_installation("v1"))
        entry = store.get_installation("v1")
        entry.binary_path = "/tampered"
        assert store.get_installation("v1").binary_path == "/runtime/v1/bin/zeroclaw"


class TestDeployments:
    """测试部署 CRUD。"""

    def test_create_and_filter(self, store, make_deployment):
        first = store.create_deployment(make_deployment(name="a"))
        store.create_deployment(make_deployment(name="b", workspace_id="other"))

        assert [d.name for d in store.list_deployments()] == ["a", "b"]
        assert [d.name for d in store.list_deployments("other")] == ["b"]
        assert store.get_deployment(first.id).name == "a"
        assert store.get_deployment("missing") is None

    def test_update_merges(self, store, make_deployment):
        created = store.create_deployment(make_deployment(last_error="boom"))
        updated = store.update_deployment(
            created.id, {"status": DeploymentStatus.RUNNING, "process_id": 42, "last_error": None}
        )
        assert updated.status == DeploymentStatus.RUNNING
        assert updated.process_id == 42
        assert updated.last_error is None
        assert updated.name == created.name
        assert updated.updated_at >= created.updated_at

    def test_update_missing(self, store):
        assert store.update_deployment("missing", {"name": "x"}) is None

    def test_delete_cascades(self, store, make_deployment):
        """删除部署同时删除其事件和策略绑定。"""
        deployment = store.create_deployment(make_deployment())
        other = store.create_deployment(make_deployment())
        store.create_event(_event(deployment.id, 1))
        store.create_event(_event(other.id, 1))
        store.upsert_policy(deployment.id, CapabilityPolicy(mode=CapabilityMode.ASSIGNED_ONLY))

        assert store.delete_deployment(deployment.id) is True
        assert store.get_deployment(deployment.id) is None
        assert store.list_events(deployment.id).events == []
        assert store.get_policy(deployment.id) is None
        assert len(store.list_events(other.id).events) == 1
        assert store.delete_deployment(deployment.id) is False


class TestEvents:
    """测试事件分页。"""

    def test_newest_first(self, store):
        for seconds in (1, 3, 2):
            store.create_event(_event("dep", seconds))
        page = store.list_events("dep")
        assert [event.message for event in page.events] == ["event 3", "event 2", "event 1"]
        assert page.next_cursor == str(to_epoch_ms(BASE_TIME + timedelta(seconds=1)))

    def test_same_millisecond_latest_write_first(self, store):
        store.create_event(_event("dep", 1, "first"))
        store.create_event(_event("dep", 1, "second"))
        assert [event.message for event in store.list_events("dep").events] == ["second", "first"]

    def test_cursor_pagination(self, store):
        for seconds in range(5):
            store.create_event(_event("dep", seconds))

        first_page = store.list_events("dep", limit=2)
        assert [e.message for e in first_page.events] == ["event 4", "event 3"]
        second_page = store.list_events("dep", cursor=first_page.next_cursor, limit=2)
        assert [e.message for e in second_page.events] == ["event 2", "event 1"]
        third_page = store.list_events("dep", cursor=second_page.next_cursor, limit=2)
        assert [e.message for e in third_page.events] == ["event 0"]
        last_page = store.list_events("dep", cursor=third_page.next_cursor, limit=2)
        assert last_page.events == []
        assert last_page.next_cursor is None

    def test_invalid_cursor_ignored(self, store):
        store.create_event(_event("dep", 1))
        assert len(store.list_events("dep", cursor="not-a-number").events) == 1

    def test_limit_clamped(self, store):
        for seconds in range(3):
            store.create_event(_event("dep", seconds))
        assert len(store.list_events("dep", limit=0).events) == 3
        assert len(store.list_events("dep", limit=-1).events) == 1

    def test_filters_by_deployment(self, store):
        store.create_event(_event("dep", 1))
        store.create_event(_event("other", 2))
        assert [e.deployment_id for e in store.list_events("dep").events] == ["dep"]


class TestJsonFileStore:
    """测试 JSON 快照持久化。"""

    def test_round_trip(self, tmp_path: Path, make_deployment):
        path = tmp_path / "state" / "runtime.json"
        store = JsonFileRuntimeStore(path)
        deployment = store.create_deployment(make_deployment(name="persisted"))
        store.upsert_installation(_installation("v1", active=True))
        store.create_event(_event(deployment.id, 1))
        store.upsert_policy(deployment.id, CapabilityPolicy(assigned_tool_names=["shell"]))
        assert path.exists()
        assert not path.with_suffix(".json.tmp").exists()

        reloaded = JsonFileRuntimeStore(path)
        assert reloaded.get_deployment(deployment.id).name == "persisted"
        assert reloaded.get_active_installation().version == "v1"
        assert reloaded.list_events(deployment.id).events[0].message == "event 1"
        assert reloaded.get_policy(deployment.id).assigned_tool_names == ["shell"]

    def test_events_append_without_rewriting_snapshot(self, tmp_path: Path, make_deployment):
        """事件追加到独立的 JSONL 日志，快照文件不随事件重写。"""
        path = tmp_path / "runtime.json"
        store = JsonFileRuntimeStore(path)
        deployment = store.create_deployment(make_deployment())
        snapshot_before = path.read_text(encoding="utf-8")

        for seconds in range(3):
            store.create_event(_event(deployment.id, seconds))

        assert path.read_text(encoding="utf-8") == snapshot_before
        assert "event 0" not in snapshot_before
        lines = store.events_path.read_text(encoding="utf-8").splitlines()
        assert store.events_path == tmp_path / "runtime.events.jsonl"
        assert len(lines) == 3

        reloaded = JsonFileRuntimeStore(path)
        messages = [e.message for e in reloaded.list_events(deployment.id).events]
        assert messages == ["event 2", "event 1", "event 0"]

    def test_unreadable_event_lines_skipped(self, tmp_path: Path, make_deployment):
        """事件日志中截断的行被跳过，其余事件正常加载。"""
        path = tmp_path / "runtime.json"
        store = JsonFileRuntimeStore(path)
        deployment = store.create_deployment(make_deployment())
        store.create_event(_event(deployment.id, 1))
        with open(store.events_path, "a", encoding="utf-8") as f:
            f.write('{"deployment_id": "trunc')

        reloaded = JsonFileRuntimeStore(path)
        assert [e.message for e in reloaded.list_events(deployment.id).events] == ["event 1"]

    def test_delete_compacts_event_log(self, tmp_path: Path, make_deployment):
        """删除部署后事件日志中不再保留其事件。"""
        path = tmp_path / "runtime.json"
        store = JsonFileRuntimeStore(path)
        gone = store.create_deployment(make_deployment(name="gone"))
        kept = store.create_deployment(make_deployment(name="kept"))
        store.create_event(_event(gone.id, 1, "gone event"))
        store.create_event(_event(kept.id, 2, "kept event"))

        store.delete_deployment(gone.id)

        reloaded = JsonFileRuntimeStore(path)
        assert reloaded.list_events(gone.id).events == []
        assert [e.message for e in reloaded.list_events(kept.id).events] == ["kept event"]

    def test_corrupt_snapshot_starts_empty(self, tmp_path: Path):
        path = tmp_path / "runtime.json"
        path.write_text("{not json", encoding="utf-8")
        store = JsonFileRuntimeStore(path)
        assert store.list_deployments() == []

    def test_missing_file_is_empty(self, tmp_path: Path):
        store = JsonFileRuntimeStore(tmp_path / "absent.json")
        assert store.list_installations() == []
        assert isinstance(store, InMemoryRuntimeStore)
