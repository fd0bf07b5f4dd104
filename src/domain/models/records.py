"""データモデル定義"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class RecordKind(str, Enum):
    """トランスクリプトレコード種別"""

    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    TEXT = "text"
    SKILL_PRELOAD = "skill_preload"
    DEFINITION_LOAD = "definition_load"


class FileOperation(str, Enum):
    """ファイル操作種別

    WRITEは全体書き込み。新規作成か上書きかはtool_resultで確定する。
    """

    CREATE = "create"
    WRITE = "write"
    EDIT = "edit"
    DELETE = "delete"
    READ = "read"


class OutcomeReason(str, Enum):
    """ライフサイクル処理の結果理由コード"""

    OK = "ok"
    STORE_UNAVAILABLE = "store_unavailable"
    CORRELATION_MISS = "correlation_miss"
    TRANSCRIPT_UNREADABLE = "transcript_unreadable"
    CLASSIFICATION_FAILED = "classification_failed"


@dataclass
class StartContext:
    """サブエージェント開始時コンテキスト"""

    agent_id: str
    agent_type: str
    session_id: str
    cwd: str
    transcript_path: str
    prompt: str = ""
    tool_use_id: str = ""
    timestamp: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """永続化用dict（toolUseIdはホスト側の命名に合わせる）"""
        return {
            "agent_id": self.agent_id,
            "agent_type": self.agent_type,
            "session_id": self.session_id,
            "cwd": self.cwd,
            "transcript_path": self.transcript_path,
            "prompt": self.prompt,
            "toolUseId": self.tool_use_id,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StartContext":
        """永続化dictから復元（欠損キーは空文字）"""
        return cls(
            agent_id=str(data.get("agent_id") or ""),
            agent_type=str(data.get("agent_type") or ""),
            session_id=str(data.get("session_id") or ""),
            cwd=str(data.get("cwd") or ""),
            transcript_path=str(data.get("transcript_path") or ""),
            prompt=str(data.get("prompt") or ""),
            tool_use_id=str(data.get("toolUseId") or ""),
            timestamp=str(data.get("timestamp") or ""),
        )


@dataclass(frozen=True)
class TranscriptRecord:
    """トランスクリプト1エントリから抽出したレコード"""

    index: int
    kind: RecordKind
    timestamp: Optional[str] = None
    tool_use_id: Optional[str] = None
    tool_name: Optional[str] = None
    file_path: Optional[str] = None
    operation: Optional[FileOperation] = None
    is_error: bool = False
    text: Optional[str] = None


@dataclass(frozen=True)
class SpawnMatch:
    """親トランスクリプト内のサブエージェント起動tool_use"""

    tool_use_id: str
    prompt: str
    subagent_type: str
    index: int
    method: str  # "linked" | "nearest"


@dataclass
class EditSummary:
    """サブエージェント1回分のファイル操作サマリ"""

    subagent_type: str = ""
    agent_prompt: str = ""
    agent_file: Optional[str] = None
    agent_preloaded_skills_files: List[str] = field(default_factory=list)
    agent_new_files: List[str] = field(default_factory=list)
    agent_edited_files: List[str] = field(default_factory=list)
    agent_deleted_files: List[str] = field(default_factory=list)

    @property
    def has_file_operations(self) -> bool:
        return bool(self.agent_new_files or self.agent_edited_files or self.agent_deleted_files)

    @classmethod
    def empty(cls, context: Optional[StartContext] = None) -> "EditSummary":
        """空サマリ（type/promptはcontextがあればそこから）"""
        if context is None:
            return cls()
        return cls(subagent_type=context.agent_type, agent_prompt=context.prompt)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subagentType": self.subagent_type,
            "agentPrompt": self.agent_prompt,
            "agentFile": self.agent_file,
            "agentPreloadedSkillsFiles": list(self.agent_preloaded_skills_files),
            "agentNewFiles": list(self.agent_new_files),
            "agentEditedFiles": list(self.agent_edited_files),
            "agentDeletedFiles": list(self.agent_deleted_files),
        }


@dataclass
class StartOutcome:
    """SubagentStart処理結果"""

    context: StartContext
    reasons: List[OutcomeReason] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.reasons


@dataclass
class StopOutcome:
    """SubagentStop処理結果"""

    summary: EditSummary
    reasons: List[OutcomeReason] = field(default_factory=list)
    context_deleted: bool = False

    @property
    def ok(self) -> bool:
        return not self.reasons
