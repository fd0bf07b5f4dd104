#!/usr/bin/env python3
"""install-hooks コマンド実装

機能:
1. .subagent-ledger/config.yaml がなければ雛形生成
2. .claude/settings.json へ SubagentStart/SubagentStop フック設定を登録
"""

import copy
import json
from pathlib import Path
from typing import Any, Optional

from shared.constants import (
    CONFIG_DIR_NAME,
    CONFIG_FILENAME,
    SUBAGENT_START_EVENT,
    SUBAGENT_STOP_EVENT,
)

HOOK_COMMAND = "python3 -m domain.hooks.subagent_event_hook"


class InstallHooksCommand:
    """フックインストールコマンド"""

    CONFIG_TEMPLATE = """\
# subagent-ledger 設定ファイル

# サブエージェント追跡設定
subagent_tracking:
  enabled: true
  # 開始コンテキストの保存先（プロジェクトルートからの相対パス）
  store_path: ".claude/logs/subagent-tasks.json"
  # ストアのロック待ち上限（秒）。未指定時は無制限
  # lock_timeout_seconds: 10
  # prune対象とする放置コンテキストの経過時間（分）
  stale_context_minutes: 1440
  # ログに出すプロンプトの先頭文字数
  prompt_preview_length: 100

# ログ設定
logging:
  level: "INFO"
"""

    # SubagentStart/SubagentStopの両方に同じモジュールを登録する
    # （イベント種別はstdinのhook_event_nameで判定）
    DEFAULT_SUBAGENT_HOOKS = {
        SUBAGENT_START_EVENT: [
            {
                "hooks": [
                    {
                        "type": "command",
                        "command": HOOK_COMMAND,
                    }
                ]
            }
        ],
        SUBAGENT_STOP_EVENT: [
            {
                "hooks": [
                    {
                        "type": "command",
                        "command": HOOK_COMMAND,
                    }
                ]
            }
        ],
    }

    def __init__(
        self, force: bool = False, dry_run: bool = False, project_root: Optional[Path] = None
    ):
        """
        Args:
            force: 既存ファイルを上書きするか
            dry_run: 実行内容を表示するのみ
            project_root: インストール先（デフォルト: カレントディレクトリ）
        """
        self.force = force
        self.dry_run = dry_run
        self.project_root = Path(project_root) if project_root else Path.cwd()

    def execute(self) -> int:
        """コマンド実行"""
        print("subagent-ledger install-hooks")
        print("=" * 40)

        try:
            # 1. .subagent-ledger/ ディレクトリと設定雛形生成
            self._create_config_dir()

            # 2. .claude/settings.json へフック設定追加
            self._update_settings_json()

            print()
            print("インストール完了")
            return 0

        except OSError as e:
            print(f"エラー: {e}")
            return 1

    def _create_config_dir(self):
        """`.subagent-ledger/` ディレクトリと config.yaml を生成"""
        config_dir = self.project_root / CONFIG_DIR_NAME

        if self.dry_run:
            print(f"[dry-run] ディレクトリ作成: {config_dir}")
        else:
            config_dir.mkdir(exist_ok=True)
            print(f"ディレクトリ確認: {config_dir}")

        self._write_file(config_dir / CONFIG_FILENAME, self.CONFIG_TEMPLATE)

    def _write_file(self, path: Path, content: str):
        """ファイル書き込み（force/dry-run考慮）"""
        existed = path.exists()
        if existed and not self.force:
            print(f"  スキップ（既存）: {path.name}")
            return

        action = "上書き" if existed else "作成"
        if self.dry_run:
            print(f"  [dry-run] {action}: {path.name}")
        else:
            path.write_text(content, encoding="utf-8")
            print(f"  {action}: {path.name}")

    def _update_settings_json(self):
        """`.claude/settings.json` にサブエージェントフック設定を追加"""
        claude_dir = self.project_root / ".claude"
        settings_path = claude_dir / "settings.json"

        print()
        print("フック設定更新:")

        # .claude/ ディレクトリ作成
        if self.dry_run:
            if not claude_dir.exists():
                print(f"  [dry-run] ディレクトリ作成: {claude_dir}")
        else:
            claude_dir.mkdir(exist_ok=True)

        # 既存設定の読み込み
        settings = self._load_settings(settings_path)

        # SubagentStart/Stopフック設定のマージ
        updated = self._merge_subagent_hooks(settings)

        if not updated:
            print("  フック設定は既に存在します（変更なし）")
            return

        # 設定の書き込み
        if self.dry_run:
            print("  [dry-run] settings.json を更新")
        else:
            self._save_settings(settings_path, settings)
            print(f"  更新: {settings_path}")

    def _load_settings(self, path: Path) -> dict[str, Any]:
        """settings.json を読み込み"""
        if not path.exists():
            return {}

        try:
            content = path.read_text(encoding="utf-8")
            settings = json.loads(content)
        except json.JSONDecodeError:
            print(f"  警告: {path} のパースに失敗。新規作成します。")
            return {}
        return settings if isinstance(settings, dict) else {}

    def _merge_subagent_hooks(self, settings: dict[str, Any]) -> bool:
        """SubagentStart/Stopフックをマージ（既存commandは重複登録しない）

        Returns:
            bool: 変更があった場合True
        """
        hooks = settings.setdefault("hooks", {})

        added = False
        for event_name, new_entries in self.DEFAULT_SUBAGENT_HOOKS.items():
            event_hooks = hooks.setdefault(event_name, [])

            # 既存のcommandを収集
            existing_commands = set()
            for hook_entry in event_hooks:
                for hook in hook_entry.get("hooks", []):
                    if "command" in hook:
                        existing_commands.add(hook["command"])

            for new_entry in new_entries:
                for hook in new_entry.get("hooks", []):
                    cmd = hook.get("command", "")
                    if cmd and cmd not in existing_commands:
                        event_hooks.append(copy.deepcopy(new_entry))
                        existing_commands.add(cmd)
                        added = True
                        print(f"  追加: {event_name} → {cmd}")

        return added

    def _save_settings(self, path: Path, settings: dict[str, Any]):
        """settings.json を保存"""
        content = json.dumps(settings, indent=2, ensure_ascii=False)
        path.write_text(content + "\n", encoding="utf-8")
