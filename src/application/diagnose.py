"""診断コマンド - 環境情報・設定・ストア状態の収集"""

import json
import platform
import sys
from datetime import timedelta
from pathlib import Path
from typing import Optional

import yaml

from infrastructure.config.config_manager import ConfigManager, LedgerConfig
from infrastructure.store.context_store import ContextStore, StoreUnavailableError
from shared.constants import (
    CONFIG_DIR_NAME,
    CONFIG_FILENAME,
    SUBAGENT_START_EVENT,
    SUBAGENT_STOP_EVENT,
)

HOOK_MODULE = "domain.hooks.subagent_event_hook"


class DiagnoseCommand:
    """環境診断コマンド"""

    def __init__(self, project_root: Optional[Path] = None):
        self.cwd = Path(project_root) if project_root else Path.cwd()
        self.issues: list[str] = []
        self.config: LedgerConfig = ConfigManager(project_dir=self.cwd).load()

    def execute(self) -> int:
        """診断を実行"""
        print("=" * 60)
        print("subagent-ledger 診断レポート")
        print("=" * 60)
        print()

        self._print_environment()
        self._print_installation()
        self._print_settings_json()
        self._print_ledger_config()
        self._print_store_state()
        self._print_issues_summary()

        return 0

    def _print_environment(self) -> None:
        """環境情報を出力"""
        print("## 環境情報")
        print(f"OS: {platform.system()} {platform.release()}")
        print(f"Python: {sys.version.split()[0]}")
        print(f"Python Path: {sys.executable}")
        print(f"作業ディレクトリ: {self.cwd}")
        print()

    def _print_installation(self) -> None:
        """インストール情報を出力"""
        print("## インストール状態")

        from shared.version import __version__
        print(f"subagent-ledger: {__version__}")

        try:
            from domain.hooks import subagent_event_hook  # noqa: F401
            print(f"  {HOOK_MODULE}: インポート可能")
        except ImportError as e:
            print(f"  {HOOK_MODULE}: インポート失敗 ({e})")
            self.issues.append(f"フックモジュールをインポートできません: {e}")
        print()

    def _print_settings_json(self) -> None:
        """settings.json のフック登録状態を出力"""
        print("## .claude/settings.json")

        settings_path = self.cwd / ".claude" / "settings.json"
        if not settings_path.exists():
            print("状態: 未作成")
            self.issues.append(".claude/settings.json が存在しません")
            print()
            return

        try:
            settings = json.loads(settings_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            print("状態: JSON パースエラー")
            self.issues.append(f"settings.json のJSON形式が不正: {e}")
            print()
            return
        except OSError as e:
            print(f"状態: 読み込みエラー ({e})")
            self.issues.append(f"settings.json の読み込み失敗: {e}")
            print()
            return

        hooks = settings.get("hooks", {}) if isinstance(settings, dict) else {}
        for event_name in (SUBAGENT_START_EVENT, SUBAGENT_STOP_EVENT):
            commands = [
                hook.get("command", "")
                for entry in hooks.get(event_name, [])
                for hook in entry.get("hooks", [])
            ]
            if any(HOOK_MODULE in command for command in commands):
                print(f"  {event_name}: 登録済み")
            else:
                print(f"  {event_name}: 未登録")
                self.issues.append(f"{event_name} フックが登録されていません（install-hooks を実行）")
        print()

    def _print_ledger_config(self) -> None:
        """subagent-ledger 設定ファイルの状態を出力"""
        print(f"## {CONFIG_DIR_NAME}/ 設定")

        config_path = self.cwd / CONFIG_DIR_NAME / CONFIG_FILENAME
        if not config_path.exists():
            print(f"  {CONFIG_FILENAME}: 未作成（デフォルト値を使用）")
        else:
            self._validate_yaml(config_path)

        print(f"  enabled: {self.config.enabled}")
        print(f"  store_path: {self.config.store_path}")
        print(f"  stale_context_minutes: {self.config.stale_context_minutes}")
        print(f"  logging.level: {self.config.log_level}")
        print()

    def _validate_yaml(self, path: Path) -> None:
        """YAMLファイルを検証"""
        try:
            yaml.safe_load(path.read_text(encoding="utf-8"))
            size = path.stat().st_size
            print(f"  {path.name}: OK ({size} bytes)")
        except yaml.YAMLError as e:
            print(f"  {path.name}: YAML構文エラー")
            self.issues.append(f"{path.name} のYAML構文エラー: {e}")
        except OSError as e:
            print(f"  {path.name}: 読み込みエラー ({e})")

    def _print_store_state(self) -> None:
        """開始コンテキストストアの状態を出力"""
        print("## 開始コンテキストストア")

        store_path = ContextStore.resolve_store_path(self.config.project_dir, self.config.store_path)
        print(f"  パス: {store_path}")
        if not store_path.exists():
            print("  状態: 未作成（SubagentStart未発火）")
            print()
            return

        try:
            store = ContextStore(store_path)
            contexts = store.list_contexts()
            stale = store.find_stale(timedelta(minutes=self.config.stale_context_minutes))
        except StoreUnavailableError as e:
            print(f"  状態: 読み込みエラー ({e})")
            self.issues.append(f"ストアを読み込めません: {e}")
            print()
            return

        print(f"  実行中コンテキスト: {len(contexts) - len(stale)} 件")
        print(f"  放置コンテキスト: {len(stale)} 件")
        for context in stale:
            print(f"    - {context.agent_id} ({context.agent_type}, {context.timestamp})")
        if stale:
            self.issues.append(f"放置コンテキストが {len(stale)} 件あります（prune で削除可能）")
        print()

    def _print_issues_summary(self) -> None:
        """検出した問題のサマリーを出力"""
        print("=" * 60)
        if self.issues:
            print(f"## 検出された問題 ({len(self.issues)} 件)")
            for i, issue in enumerate(self.issues, 1):
                print(f"  {i}. {issue}")
        else:
            print("## 問題は検出されませんでした")
        print("=" * 60)
