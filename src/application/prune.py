"""prune コマンド - SubagentStopが来なかった開始コンテキストの削除"""

from datetime import timedelta
from pathlib import Path
from typing import Optional

from infrastructure.config.config_manager import ConfigManager
from infrastructure.store.context_store import ContextStore, StoreUnavailableError


class PruneCommand:
    """放置コンテキスト削除コマンド"""

    def __init__(
        self,
        older_than_minutes: Optional[int] = None,
        dry_run: bool = False,
        project_root: Optional[Path] = None,
    ):
        """
        Args:
            older_than_minutes: 削除対象の経過時間（未指定時は設定値）
            dry_run: 対象を表示するのみ
            project_root: プロジェクトルート（デフォルト: カレントディレクトリ）
        """
        self.project_root = Path(project_root) if project_root else Path.cwd()
        self.config = ConfigManager(project_dir=self.project_root).load()
        if older_than_minutes is not None:
            if older_than_minutes < 0:
                raise ValueError(f"older_than_minutes は0以上: {older_than_minutes}")
            self.older_than_minutes = older_than_minutes
        else:
            self.older_than_minutes = self.config.stale_context_minutes
        self.dry_run = dry_run

    def execute(self) -> int:
        """コマンド実行"""
        store_path = ContextStore.resolve_store_path(self.config.project_dir, self.config.store_path)
        max_age = timedelta(minutes=self.older_than_minutes)
        print(f"subagent-ledger prune (> {self.older_than_minutes} 分)")

        if not store_path.exists():
            print(f"  ストアなし: {store_path}")
            return 0

        store = ContextStore(store_path)
        try:
            if self.dry_run:
                removed = [context.agent_id for context in store.find_stale(max_age)]
            else:
                removed = store.prune(max_age)
        except StoreUnavailableError as e:
            print(f"エラー: {e}")
            return 1

        prefix = "[dry-run] " if self.dry_run else ""
        for agent_id in removed:
            print(f"  {prefix}削除: {agent_id}")
        print(f"  {prefix}{len(removed)} 件削除")
        return 0
