"""EditClassifier - レコード列から作成・編集・削除ファイルを分類する"""

import os
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from domain.models.records import (
    EditSummary,
    FileOperation,
    RecordKind,
    StartContext,
    TranscriptRecord,
)


class PathState(str, Enum):
    """パスの分類状態（未観測・作成後削除は状態なし=None）"""

    NEW = "new"
    EDITED = "edited"
    DELETED = "deleted"


_MUTATING_OPERATIONS = frozenset([
    FileOperation.CREATE,
    FileOperation.WRITE,
    FileOperation.EDIT,
    FileOperation.DELETE,
])

# (直前の状態, 操作) -> 次の状態
# 削除後の再作成はNEWとする（実行前のファイル有無は不明なため近似）
_TRANSITIONS: Dict[Tuple[Optional[PathState], FileOperation], Optional[PathState]] = {
    (None, FileOperation.CREATE): PathState.NEW,
    (None, FileOperation.WRITE): PathState.NEW,
    (None, FileOperation.EDIT): PathState.EDITED,
    (None, FileOperation.DELETE): PathState.DELETED,
    (PathState.NEW, FileOperation.CREATE): PathState.NEW,
    (PathState.NEW, FileOperation.WRITE): PathState.NEW,
    (PathState.NEW, FileOperation.EDIT): PathState.NEW,
    (PathState.NEW, FileOperation.DELETE): None,
    (PathState.EDITED, FileOperation.CREATE): PathState.NEW,
    (PathState.EDITED, FileOperation.WRITE): PathState.EDITED,
    (PathState.EDITED, FileOperation.EDIT): PathState.EDITED,
    (PathState.EDITED, FileOperation.DELETE): PathState.DELETED,
    (PathState.DELETED, FileOperation.CREATE): PathState.NEW,
    (PathState.DELETED, FileOperation.WRITE): PathState.NEW,
    (PathState.DELETED, FileOperation.EDIT): PathState.EDITED,
    (PathState.DELETED, FileOperation.DELETE): PathState.DELETED,
}


def normalize_path(path: str, cwd: Optional[str] = None) -> str:
    """パスを正規化（~展開、相対パスはcwd基準、normpath）"""
    expanded = os.path.expanduser(path.strip())
    if not os.path.isabs(expanded) and cwd:
        expanded = os.path.join(cwd, expanded)
    return os.path.normpath(expanded)


class EditClassifier:
    """トランスクリプト順にレコードを受け取り、パスごとの状態を更新する"""

    def __init__(self, cwd: Optional[str] = None):
        """初期化

        Args:
            cwd: 相対パス解決の基準ディレクトリ
        """
        self._cwd = cwd or None
        self._states: Dict[str, PathState] = {}
        # パス -> [(tool_use_id, 操作)]（状態はこの履歴を先頭から畳み込んだもの）
        self._history: Dict[str, List[Tuple[Optional[str], FileOperation]]] = {}
        # tool_use_id -> 影響したパス（tool_resultでの確定・取り消し用）
        self._pending: Dict[str, List[str]] = {}
        self._skills: Dict[str, None] = {}
        self._agent_file: Optional[str] = None

    def feed(self, record: TranscriptRecord) -> None:
        if record.kind == RecordKind.SKILL_PRELOAD:
            if record.file_path:
                self._skills.setdefault(normalize_path(record.file_path, self._cwd))
        elif record.kind == RecordKind.DEFINITION_LOAD:
            if record.file_path and self._agent_file is None:
                self._agent_file = normalize_path(record.file_path, self._cwd)
        elif record.kind == RecordKind.TOOL_USE:
            self._apply_tool_use(record)
        elif record.kind == RecordKind.TOOL_RESULT:
            self._apply_tool_result(record)

    def _apply_tool_use(self, record: TranscriptRecord) -> None:
        if record.operation not in _MUTATING_OPERATIONS or not record.file_path:
            return
        path = normalize_path(record.file_path, self._cwd)
        self._history.setdefault(path, []).append((record.tool_use_id, record.operation))
        self._set_state(path, _TRANSITIONS[(self._states.get(path), record.operation)])
        if record.tool_use_id:
            paths = self._pending.setdefault(record.tool_use_id, [])
            if path not in paths:
                paths.append(path)

    def _apply_tool_result(self, record: TranscriptRecord) -> None:
        tool_use_id = record.tool_use_id
        if not tool_use_id:
            return
        paths = self._pending.pop(tool_use_id, None)
        if not paths:
            return

        if record.is_error:
            # 失敗したツール呼び出しの操作だけを履歴から除き、他の呼び出しの効果は残す
            for path in paths:
                self._history[path] = [
                    entry for entry in self._history[path] if entry[0] != tool_use_id
                ]
                self._replay(path)
            return

        if record.operation in (FileOperation.CREATE, FileOperation.EDIT) and record.file_path:
            resolved_path = normalize_path(record.file_path, self._cwd)
            if resolved_path in paths:
                self._history[resolved_path] = [
                    (entry_id, record.operation)
                    if entry_id == tool_use_id and operation == FileOperation.WRITE
                    else (entry_id, operation)
                    for entry_id, operation in self._history[resolved_path]
                ]
                self._replay(resolved_path)

    def _replay(self, path: str) -> None:
        state: Optional[PathState] = None
        for _, operation in self._history[path]:
            state = _TRANSITIONS[(state, operation)]
        self._set_state(path, state)

    def _set_state(self, path: str, state: Optional[PathState]) -> None:
        if state is None:
            self._states.pop(path, None)
        else:
            self._states[path] = state

    def _paths(self, state: PathState) -> List[str]:
        return [path for path, current in self._states.items() if current == state]

    def summary(self, start_context: Optional[StartContext] = None) -> EditSummary:
        """現在の状態からEditSummaryを生成"""
        summary = EditSummary.empty(start_context)
        summary.agent_file = self._agent_file
        summary.agent_preloaded_skills_files = list(self._skills)
        summary.agent_new_files = self._paths(PathState.NEW)
        summary.agent_edited_files = self._paths(PathState.EDITED)
        summary.agent_deleted_files = self._paths(PathState.DELETED)
        return summary


def classify(
    records: Iterable[TranscriptRecord],
    start_context: Optional[StartContext] = None,
) -> EditSummary:
    """レコード列と開始コンテキストからEditSummaryを生成

    subagentType/agentPromptは開始コンテキストの値をそのまま使う。
    開始コンテキストがない場合は空文字。

    Args:
        records: トランスクリプト順のレコード列
        start_context: SubagentStart時に保存したコンテキスト

    Returns:
        EditSummary
    """
    classifier = EditClassifier(cwd=start_context.cwd if start_context else None)
    for record in records:
        classifier.feed(record)
    return classifier.summary(start_context)
