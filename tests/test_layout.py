"""部署文件布局测试。"""

from __future__ import annotations

import json
from pathlib import Path

from sidecar_manager.capabilities import normalize_policy
from sidecar_manager.layout import DeploymentLayout
from sidecar_manager.models import CapabilityGates, EffectiveCapabilitySet


class TestDeploymentLayout:
    """测试 config.json / runtime.env 的生成。"""

    def test_paths(self, tmp_path: Path):
        layout = DeploymentLayout.for_deployment(tmp_path / "deployments", "dep-1")
        assert layout.root == tmp_path / "deployments" / "dep-1"
        assert layout.config_path.name == "config.json"
        assert layout.env_path.name == "runtime.env"
        assert layout.log_path == layout.root / "logs" / "runtime.log"
        assert layout.home_dir == layout.root / "home"

    def test_write(self, tmp_path: Path, make_deployment):
        deployment = make_deployment(env={"FEATURE": "on", "GREETING": "hello world"})
        policy = normalize_policy({"mode": "assigned_only", "assigned_tool_names": ["shell"]})
        effective = EffectiveCapabilitySet(mode=policy.mode, gates=CapabilityGates(exec=True))
        layout = DeploymentLayout.for_deployment(tmp_path, deployment.id)

        result = layout.write(deployment, policy, effective, {"ZEROCLAW_MODEL": "claude-test"})

        assert result is layout
        assert layout.home_dir.is_dir()
        assert layout.log_path.parent.is_dir()

        config = json.loads(layout.config_path.read_text(encoding="utf-8"))
        assert config["deployment"]["id"] == deployment.id
        assert config["deployment"]["gateway"] == {"host": "127.0.0.1", "port": 18080}
        assert config["deployment"]["apiBaseUrl"] == "http://127.0.0.1:18080"
        assert config["policy"]["mode"] == "assigned_only"
        assert config["policy"]["assigned_tool_names"] == ["shell"]
        assert config["capabilities"]["gates"]["exec"] is True

        lines = layout.env_path.read_text(encoding="utf-8").splitlines()
        assert lines == ["FEATURE=on", 'GREETING="hello world"', "ZEROCLAW_MODEL=claude-test"]

    def test_rewrite_replaces_files(self, tmp_path: Path, make_deployment):
        layout = DeploymentLayout.for_deployment(tmp_path, "dep-1")
        policy = normalize_policy(None)
        layout.write(make_deployment(env={"A": "1"}), policy, EffectiveCapabilitySet())
        layout.write(make_deployment(), policy, EffectiveCapabilitySet())

        assert layout.env_path.read_text(encoding="utf-8") == ""
        assert not layout.config_path.with_suffix(".json.tmp").exists()
