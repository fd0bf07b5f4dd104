"""LifecycleCoordinator - SubagentStart/Stopの処理単位

Start: ContextStore.save
Stop:  ContextStore.load → scan → classify → ContextStore.delete

Stop処理は分類の成否にかかわらず必ずコンテキストを削除する。
失敗はOutcomeReasonとして返し、例外は外に出さない（ストア障害・分類失敗とも）。
"""

from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from domain.models.records import (
    EditSummary,
    OutcomeReason,
    StartContext,
    StartOutcome,
    StopOutcome,
    TranscriptRecord,
)
from domain.services.edit_classifier import classify
from domain.services.transcript_scanner import scan
from infrastructure.store.context_store import ContextStore, StoreUnavailableError
from shared.structured_logging import DEFAULT_LOG_DIR, StructuredLogger

_logger = StructuredLogger(name="LifecycleCoordinator", log_dir=DEFAULT_LOG_DIR)


class LifecycleCoordinator:
    """agent_idごとの NONE → STARTED → REPORTED 遷移を調整する"""

    def __init__(
        self,
        store: ContextStore,
        scanner: Callable[..., Iterable[TranscriptRecord]] = scan,
        classifier: Callable[..., EditSummary] = classify,
    ):
        """初期化

        Args:
            store: ContextStoreインスタンス
            scanner: scan(transcript_path, agent_id=, tool_use_id=) 互換の関数
            classifier: classify(records, start_context) 互換の関数
        """
        self._store = store
        self._scanner = scanner
        self._classifier = classifier

    def start(
        self,
        agent_id: str,
        agent_type: str,
        session_id: str,
        cwd: str,
        transcript_path: str,
    ) -> StartOutcome:
        """SubagentStart時。開始コンテキストを保存する

        ストア障害時は保存せずにメモリ上のコンテキストを返す。
        """
        reasons = []
        try:
            context = self._store.save(agent_id, agent_type, session_id, cwd, transcript_path)
        except StoreUnavailableError as e:
            _logger.error(f"Context save failed: agent={agent_id}, error={e}")
            reasons.append(OutcomeReason.STORE_UNAVAILABLE)
            context = StartContext(
                agent_id=agent_id,
                agent_type=agent_type,
                session_id=session_id,
                cwd=cwd,
                transcript_path=transcript_path,
                timestamp=datetime.now(timezone.utc).isoformat(),
            )

        if not context.tool_use_id:
            reasons.append(OutcomeReason.CORRELATION_MISS)
        return StartOutcome(context=context, reasons=reasons)

    def stop(self, agent_id: str, agent_transcript_path: Optional[str]) -> StopOutcome:
        """SubagentStop時。トランスクリプトを分類し、開始コンテキストを削除する"""
        reasons = []
        context: Optional[StartContext] = None
        summary = EditSummary()
        deleted = False

        try:
            try:
                context = self._store.load(agent_id)
            except StoreUnavailableError as e:
                _logger.error(f"Context load failed: agent={agent_id}, error={e}")
                reasons.append(OutcomeReason.STORE_UNAVAILABLE)
            if context is None:
                _logger.info(f"No start context: agent={agent_id}")
                reasons.append(OutcomeReason.CORRELATION_MISS)

            summary = EditSummary.empty(context)
            try:
                records = self._scanner(
                    agent_transcript_path,
                    agent_id=agent_id,
                    tool_use_id=context.tool_use_id if context else None,
                )
                summary = self._classifier(records, context)
                if getattr(records, "unreadable", False):
                    reasons.append(OutcomeReason.TRANSCRIPT_UNREADABLE)
                skipped = getattr(records, "skipped_lines", 0)
                if skipped:
                    _logger.warning(
                        f"Skipped malformed transcript lines: agent={agent_id}, count={skipped}"
                    )
            except Exception:
                _logger.exception(f"Classification failed: agent={agent_id}")
                reasons.append(OutcomeReason.CLASSIFICATION_FAILED)
        finally:
            try:
                self._store.delete(agent_id)
                deleted = True
            except StoreUnavailableError as e:
                _logger.error(f"Context delete failed: agent={agent_id}, error={e}")
                if OutcomeReason.STORE_UNAVAILABLE not in reasons:
                    reasons.append(OutcomeReason.STORE_UNAVAILABLE)

        return StopOutcome(summary=summary, reasons=reasons, context_deleted=deleted)
