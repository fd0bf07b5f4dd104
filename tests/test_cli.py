"""CLI（install-hooks / diagnose / prune）のテスト"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from application.cli import main
from application.diagnose import DiagnoseCommand
from application.install_hooks import HOOK_COMMAND, InstallHooksCommand
from application.prune import PruneCommand


@pytest.fixture
def project(tmp_path, monkeypatch):
    """カレントディレクトリをテスト用プロジェクトにする"""
    monkeypatch.delenv("CLAUDE_PROJECT_DIR", raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


def _hook_commands(settings, event_name):
    return [
        hook["command"]
        for entry in settings["hooks"].get(event_name, [])
        for hook in entry["hooks"]
    ]


def _write_store(project, document):
    store_path = project / ".claude" / "logs" / "subagent-tasks.json"
    store_path.parent.mkdir(parents=True, exist_ok=True)
    store_path.write_text(json.dumps(document), encoding="utf-8")
    return store_path


class TestVersion:

    def test_version(self, capsys):
        from shared.version import __version__

        assert main(["--version"]) == 0
        assert capsys.readouterr().out.strip() == f"subagent-ledger v{__version__}"

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "install-hooks" in capsys.readouterr().out


class TestInstallHooks:
    """install-hooks"""

    def test_creates_config_and_settings(self, project):
        assert main(["install-hooks"]) == 0

        assert (project / ".subagent-ledger" / "config.yaml").exists()
        settings = json.loads((project / ".claude" / "settings.json").read_text(encoding="utf-8"))
        assert _hook_commands(settings, "SubagentStart") == [HOOK_COMMAND]
        assert _hook_commands(settings, "SubagentStop") == [HOOK_COMMAND]

    def test_idempotent(self, project, capsys):
        main(["install-hooks"])
        main(["install-hooks"])

        settings = json.loads((project / ".claude" / "settings.json").read_text(encoding="utf-8"))
        assert _hook_commands(settings, "SubagentStart") == [HOOK_COMMAND]
        assert "変更なし" in capsys.readouterr().out

    def test_preserves_existing_hooks(self, project):
        claude_dir = project / ".claude"
        claude_dir.mkdir()
        existing = {
            "permissions": {"allow": ["Bash(ls)"]},
            "hooks": {
                "SubagentStop": [{"hooks": [{"type": "command", "command": "echo stop"}]}],
                "PreToolUse": [{"matcher": "", "hooks": [{"type": "command", "command": "echo pre"}]}],
            },
        }
        (claude_dir / "settings.json").write_text(json.dumps(existing), encoding="utf-8")

        main(["install-hooks"])

        settings = json.loads((claude_dir / "settings.json").read_text(encoding="utf-8"))
        assert settings["permissions"] == {"allow": ["Bash(ls)"]}
        assert _hook_commands(settings, "SubagentStop") == ["echo stop", HOOK_COMMAND]
        assert _hook_commands(settings, "PreToolUse") == ["echo pre"]

    def test_dry_run_writes_nothing(self, project):
        assert main(["install-hooks", "--dry-run"]) == 0

        assert not (project / ".subagent-ledger").exists()
        assert not (project / ".claude" / "settings.json").exists()

    def test_existing_config_kept_without_force(self, project):
        config_dir = project / ".subagent-ledger"
        config_dir.mkdir()
        (config_dir / "config.yaml").write_text("custom: true\n", encoding="utf-8")

        main(["install-hooks"])
        assert (config_dir / "config.yaml").read_text(encoding="utf-8") == "custom: true\n"

        main(["install-hooks", "--force"])
        assert "subagent_tracking" in (config_dir / "config.yaml").read_text(encoding="utf-8")

    def test_template_is_valid_config(self, tmp_path):
        """雛形の設定値はデフォルトと一致する"""
        from infrastructure.config.config_manager import ConfigManager, LedgerConfig

        InstallHooksCommand(project_root=tmp_path).execute()
        config = ConfigManager(config_path=tmp_path / ".subagent-ledger" / "config.yaml").load()

        defaults = LedgerConfig()
        assert config.enabled == defaults.enabled
        assert config.store_path == defaults.store_path
        assert config.stale_context_minutes == defaults.stale_context_minutes
        assert config.prompt_preview_length == defaults.prompt_preview_length

    def test_broken_settings_replaced(self, project):
        claude_dir = project / ".claude"
        claude_dir.mkdir()
        (claude_dir / "settings.json").write_text("{broken", encoding="utf-8")

        assert main(["install-hooks"]) == 0

        settings = json.loads((claude_dir / "settings.json").read_text(encoding="utf-8"))
        assert _hook_commands(settings, "SubagentStart") == [HOOK_COMMAND]


class TestDiagnose:
    """diagnose"""

    def test_reports_missing_setup(self, project, capsys):
        assert main(["diagnose"]) == 0

        out = capsys.readouterr().out
        assert ".claude/settings.json が存在しません" in out
        assert "未作成（SubagentStart未発火）" in out

    def test_reports_registered_hooks(self, project, capsys):
        InstallHooksCommand(project_root=project).execute()
        capsys.readouterr()

        DiagnoseCommand(project_root=project).execute()

        out = capsys.readouterr().out
        assert "SubagentStart: 登録済み" in out
        assert "SubagentStop: 登録済み" in out
        assert "問題は検出されませんでした" in out

    def test_reports_stale_contexts(self, project, capsys):
        now = datetime.now(timezone.utc)
        _write_store(project, {
            "live": {"agent_id": "live", "agent_type": "coder", "timestamp": now.isoformat()},
            "stale": {
                "agent_id": "stale",
                "agent_type": "coder",
                "timestamp": (now - timedelta(days=3)).isoformat(),
            },
        })

        DiagnoseCommand(project_root=project).execute()

        out = capsys.readouterr().out
        assert "実行中コンテキスト: 1 件" in out
        assert "放置コンテキスト: 1 件" in out
        assert "- stale (coder" in out


class TestPrune:
    """prune"""

    def test_prunes_old_contexts(self, project, capsys):
        now = datetime.now(timezone.utc)
        store_path = _write_store(project, {
            "live": {"agent_id": "live", "timestamp": now.isoformat()},
            "old": {"agent_id": "old", "timestamp": (now - timedelta(hours=2)).isoformat()},
        })

        assert main(["prune", "--older-than-minutes", "60"]) == 0

        assert list(json.loads(store_path.read_text(encoding="utf-8"))) == ["live"]
        assert "削除: old" in capsys.readouterr().out

    def test_dry_run_keeps_store(self, project):
        now = datetime.now(timezone.utc)
        store_path = _write_store(project, {
            "old": {"agent_id": "old", "timestamp": (now - timedelta(hours=2)).isoformat()},
        })

        PruneCommand(older_than_minutes=60, dry_run=True, project_root=project).execute()

        assert "old" in json.loads(store_path.read_text(encoding="utf-8"))

    def test_default_threshold_from_config(self, project):
        config_dir = project / ".subagent-ledger"
        config_dir.mkdir()
        (config_dir / "config.yaml").write_text(
            "subagent_tracking:\n  stale_context_minutes: 30\n", encoding="utf-8"
        )

        assert PruneCommand(project_root=project).older_than_minutes == 30

    def test_zero_threshold_is_not_default(self, project, capsys):
        """--older-than-minutes 0 は設定値ではなく0分として扱う"""
        now = datetime.now(timezone.utc)
        store_path = _write_store(project, {
            "recent": {"agent_id": "recent", "timestamp": (now - timedelta(minutes=1)).isoformat()},
        })

        assert PruneCommand(older_than_minutes=0, project_root=project).older_than_minutes == 0
        assert main(["prune", "--older-than-minutes", "0"]) == 0

        assert json.loads(store_path.read_text(encoding="utf-8")) == {}
        assert "削除: recent" in capsys.readouterr().out

    def test_negative_threshold_rejected(self, project, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["prune", "--older-than-minutes", "-5"])

        assert exc_info.value.code == 2
        assert "0以上" in capsys.readouterr().err

    def test_negative_threshold_rejected_by_command(self, project):
        with pytest.raises(ValueError):
            PruneCommand(older_than_minutes=-1, project_root=project)

    def test_no_store(self, project, capsys):
        assert main(["prune"]) == 0
        assert "ストアなし" in capsys.readouterr().out
