"""Workspace detection and configuration tests for TaskWing.

Tests:
- Single, monorepo and multi-repo classification
- Service naming and stable workspace ids
- Config defaults and TASKWING_ environment overrides
- Log component routing
"""

import pytest

from taskwing import workspace
from taskwing.config import Config, RetrievalConfig
from taskwing.errors import ValidationError
from taskwing.models import WorkspaceKind


class TestDetect:
    def test_single_project(self, write_tree):
        root = write_tree({"pyproject.toml": "[project]\nname='x'\n", "x/__init__.py": ""})
        info = workspace.detect(root)
        assert info.kind == WorkspaceKind.SINGLE
        assert info.services == ["."]
        assert not info.is_multi_service

    def test_service_directory_monorepo(self, write_tree):
        root = write_tree(
            {
                "services/api/go.mod": "module api\n",
                "services/web/package.json": "{}",
                "services/notes/README.md": "no manifest",
            }
        )
        info = workspace.detect(root)
        assert info.kind == WorkspaceKind.MONOREPO
        assert info.services == ["services/api", "services/web"]
        assert info.service_name("services/api") == "api"
        assert info.is_multi_service

    def test_single_package_with_workspace_config(self, write_tree):
        root = write_tree({"pnpm-workspace.yaml": "packages: []\n", "packages/ui/package.json": "{}"})
        assert workspace.detect(root).kind == WorkspaceKind.MONOREPO

    def test_nested_repositories_without_root_git(self, write_tree):
        root = write_tree({"billing/.git/HEAD": "ref", "users/.git/HEAD": "ref", "node_modules/x/.git/HEAD": ""})
        info = workspace.detect(root)
        assert info.kind == WorkspaceKind.MULTI_REPO
        assert info.services == ["billing", "users"]

    def test_nested_repositories_with_root_git(self, write_tree):
        root = write_tree({".git/HEAD": "ref", "billing/.git": "gitdir: ../.git/modules/billing"})
        assert workspace.detect(root).kind == WorkspaceKind.MONOREPO

    def test_not_a_directory(self, tmp_path):
        with pytest.raises(ValidationError):
            workspace.detect(tmp_path / "missing")

    def test_workspace_id_is_stable(self, write_tree):
        root = write_tree({"a.txt": ""})
        info = workspace.detect(root)
        assert info.id == workspace.workspace_id_for(root)
        assert len(info.id) == 16
        assert info.to_workspace().services == ["."]


class TestConfig:
    def test_env_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("TASKWING_MEMORY_DIR", str(tmp_path / "mem"))
        monkeypatch.setenv("TASKWING_HOOK_MAX_TASKS", "2")
        monkeypatch.setenv("TASKWING_USE_LLM_ANALYZER", "yes")
        monkeypatch.setenv("TASKWING_RRF_K", "10")
        config = Config()
        assert config.memory_dir == tmp_path / "mem"
        assert config.hook_max_tasks == 2
        assert config.use_llm_analyzer
        assert config.retrieval.rrf_k == 10

    def test_bad_numbers_fall_back_to_defaults(self, monkeypatch):
        monkeypatch.setenv("TASKWING_AGENT_WORKERS", "many")
        monkeypatch.setenv("TASKWING_FTS_WEIGHT", "heavy")
        monkeypatch.delenv("TASKWING_HOOK_MAX_MINUTES", raising=False)
        config = Config()
        assert config.agent_workers >= 1
        assert config.hook_max_minutes == 30
        assert RetrievalConfig().fts_weight == 1.0

    def test_derived_paths(self, tmp_path):
        config = Config(memory_dir=str(tmp_path / "m"))
        assert config.db_path == tmp_path / "m" / "memory.db"
        assert config.hook_session_path.name == "hook_session.json"
        assert config.report_path.name == "last-bootstrap-report.json"
        config.ensure_dirs()
        assert config.logs_dir.is_dir()

    def test_workers_floor(self):
        assert Config(agent_workers=0).agent_workers == 1


class TestLogging:
    def test_component_lookup(self):
        from taskwing.log_config import _component_of

        assert _component_of("db.fts") == "db"
        assert _component_of("reranker") == "embeddings"
        assert _component_of("agents.code") == "agents"
        assert _component_of("hooks") == "planning"
        assert _component_of("cli") is None

    def test_unknown_component_is_rejected(self):
        from taskwing.log_config import set_log_level

        with pytest.raises(ValueError):
            set_log_level("DEBUG", component="gui")
