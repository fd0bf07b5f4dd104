"""ContextStore - サブエージェント開始コンテキストの保存・取得・削除

永続化形式: 1つのJSONドキュメント { agent_id: StartContext }。
すべての更新はファイルロック下でドキュメント全体を読み込み→マージ→書き込みする
（部分的なin-place更新はしない）。書き込みは一時ファイル経由でアトミックに置換する。
"""

import json
import os
import tempfile
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Union

from domain.models.records import SpawnMatch, StartContext
from domain.services.transcript_scanner import read_spawn_candidates
from infrastructure.store.file_lock import FileLock, LockTimeoutError
from shared.constants import DEFAULT_STORE_RELATIVE_PATH
from shared.structured_logging import DEFAULT_LOG_DIR, StructuredLogger

_logger = StructuredLogger(name="ContextStore", log_dir=DEFAULT_LOG_DIR)


class StoreUnavailableError(RuntimeError):
    """ストアドキュメントの読み書き・ロック取得に失敗した"""


class ContextStore:
    """agent_idをキーとするStartContextのファイルストア"""

    def __init__(
        self,
        store_path: Union[str, Path],
        lock: Optional[FileLock] = None,
        spawn_locator: Callable[..., List[SpawnMatch]] = read_spawn_candidates,
    ):
        """初期化

        Args:
            store_path: JSONドキュメントのパス
            lock: 排他ロック（デフォルト: <store_path>.lock へのFileLock）
            spawn_locator: 親トランスクリプトから起動候補を求める関数
        """
        self.store_path = Path(store_path)
        self._lock = lock or FileLock(self.store_path.with_name(self.store_path.name + ".lock"))
        self._spawn_locator = spawn_locator

    # === ライフサイクル ===
    def save(
        self,
        agent_id: str,
        agent_type: str,
        session_id: str,
        cwd: str,
        transcript_path: str,
    ) -> StartContext:
        """SubagentStart時。親トランスクリプトから起動tool_useを特定して保存する

        起動tool_useを特定できない場合はprompt/tool_use_idを空文字で保存する。
        同じagent_idが既に存在する場合は上書き（後勝ち）。

        Args:
            agent_id: エージェントID
            agent_type: エージェントタイプ
            session_id: セッションID
            cwd: 作業ディレクトリ
            transcript_path: 親（leader）のトランスクリプトパス

        Returns:
            保存したStartContext

        Raises:
            StoreUnavailableError: ドキュメントの読み書きに失敗した場合
        """
        candidates = self._spawn_locator(transcript_path, agent_id, agent_type)

        context = StartContext(
            agent_id=agent_id,
            agent_type=agent_type,
            session_id=session_id,
            cwd=cwd,
            transcript_path=transcript_path,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

        with self._locked():
            document = self._read_document()
            spawn = self._select_spawn(candidates, document, agent_id)
            if spawn is not None:
                context.prompt = spawn.prompt
                context.tool_use_id = spawn.tool_use_id
                _logger.info(
                    f"Spawn matched: agent={agent_id}, tool_use_id={spawn.tool_use_id}, "
                    f"method={spawn.method}"
                )
            else:
                _logger.info(f"Spawn not found: agent={agent_id}, transcript={transcript_path}")
            document[agent_id] = context.to_dict()
            self._write_document(document)
        return context

    def load(self, agent_id: str) -> Optional[StartContext]:
        """agent_idのStartContextを取得（存在しない場合None）

        Raises:
            StoreUnavailableError: ドキュメントの読み込みに失敗した場合
        """
        with self._locked():
            document = self._read_document()
        data = document.get(agent_id)
        if not isinstance(data, dict):
            return None
        return StartContext.from_dict(data)

    def delete(self, agent_id: str) -> None:
        """agent_idのStartContextを削除（存在しなくてもエラーにしない）

        Raises:
            StoreUnavailableError: ドキュメントの読み書きに失敗した場合
        """
        with self._locked():
            document = self._read_document()
            if agent_id not in document:
                return
            del document[agent_id]
            self._write_document(document)

    # === クエリ ===
    def list_contexts(self) -> List[StartContext]:
        """保存中の全StartContext（ドキュメント順）"""
        with self._locked():
            document = self._read_document()
        return [StartContext.from_dict(data) for data in document.values() if isinstance(data, dict)]

    def find_stale(self, max_age: timedelta, now: Optional[datetime] = None) -> List[StartContext]:
        """prune対象となるStartContext（ストアは変更しない）"""
        threshold = (now or datetime.now(timezone.utc)) - max_age
        stale = []
        for context in self.list_contexts():
            started_at = _parse_timestamp(context.timestamp)
            if started_at is None or started_at < threshold:
                stale.append(context)
        return stale

    # === クリーンアップ ===
    def prune(self, max_age: timedelta, now: Optional[datetime] = None) -> List[str]:
        """SubagentStopが来ないまま残った古いコンテキストを削除

        timestampがmax_ageより古い、または解析できないエントリを削除する。

        Args:
            max_age: 保持期間
            now: 基準時刻（デフォルト: 現在時刻UTC）

        Returns:
            削除したagent_idのリスト
        """
        threshold = (now or datetime.now(timezone.utc)) - max_age
        removed: List[str] = []
        with self._locked():
            document = self._read_document()
            for agent_id, data in list(document.items()):
                started_at = _parse_timestamp(data.get("timestamp") if isinstance(data, dict) else None)
                if started_at is None or started_at < threshold:
                    del document[agent_id]
                    removed.append(agent_id)
            if removed:
                self._write_document(document)
        return removed

    # === 内部処理 ===
    @staticmethod
    def _select_spawn(
        candidates: List[SpawnMatch], document: Dict[str, dict], agent_id: str
    ) -> Optional[SpawnMatch]:
        """他のagentに割り当て済みでない最初の候補を選ぶ（linkedは常に採用）"""
        claimed = {
            data.get("toolUseId")
            for other_id, data in document.items()
            if other_id != agent_id and isinstance(data, dict) and data.get("toolUseId")
        }
        for candidate in candidates:
            if candidate.method == "linked" or candidate.tool_use_id not in claimed:
                return candidate
        return None

    @contextmanager
    def _locked(self) -> Iterator[None]:
        try:
            self._lock.acquire()
        except (OSError, LockTimeoutError) as e:
            raise StoreUnavailableError(f"ストアのロック取得に失敗: {self.store_path} ({e})") from e
        try:
            yield
        finally:
            self._lock.release()

    def _read_document(self) -> Dict[str, dict]:
        """ドキュメントを読み込む（不在は空、破損は警告して空）"""
        try:
            raw = self.store_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise StoreUnavailableError(f"ストアの読み込みに失敗: {self.store_path} ({e})") from e

        if not raw.strip():
            return {}
        try:
            document = json.loads(raw)
        except json.JSONDecodeError as e:
            _logger.warning(f"破損ストア検出、空として扱う: {self.store_path} ({e})")
            return {}
        if not isinstance(document, dict):
            _logger.warning(f"ストアの形式が不正、空として扱う: {self.store_path}")
            return {}
        return document

    def _write_document(self, document: Dict[str, dict]) -> None:
        """一時ファイルに書いてからアトミックに置換する"""
        try:
            self.store_path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(
                prefix=f".{self.store_path.name}.", suffix=".tmp", dir=str(self.store_path.parent)
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(document, f, indent=2, ensure_ascii=False)
                os.replace(temp_path, self.store_path)
            except BaseException:
                Path(temp_path).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StoreUnavailableError(f"ストアの書き込みに失敗: {self.store_path} ({e})") from e

    @classmethod
    def resolve_store_path(
        cls, project_dir: Optional[Union[str, Path]] = None, relative: Optional[str] = None
    ) -> Path:
        """ストアパスを解決する

        優先順:
        1. 引数 project_dir
        2. 環境変数 CLAUDE_PROJECT_DIR
        3. Path.cwd()

        relativeが絶対パスの場合はそのまま使う。

        Returns:
            Path: <project>/.claude/logs/subagent-tasks.json のパス
        """
        relative_path = Path(relative or DEFAULT_STORE_RELATIVE_PATH).expanduser()
        if relative_path.is_absolute():
            return relative_path

        base = project_dir or os.environ.get("CLAUDE_PROJECT_DIR")
        if base:
            return Path(base) / relative_path
        try:
            return Path.cwd() / relative_path
        except OSError as e:
            raise StoreUnavailableError(
                "ストアパスの解決に失敗: CLAUDE_PROJECT_DIRが未設定かつcwdも取得不可"
            ) from e


def _parse_timestamp(value) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
