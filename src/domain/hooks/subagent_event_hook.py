"""SubagentStart/Stopイベントハンドラ

settings.jsonのSubagentStart/SubagentStopフックから呼び出される。
Start時に起動コンテキストを保存し、Stop時にサブエージェントの
トランスクリプトを解析してファイル操作サマリをログ出力する。
処理をブロックしないよう終了コード0で終了する。
"""

import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

sys.path.append(str(Path(__file__).parent.parent.parent))

from domain.models.records import EditSummary, StartOutcome, StopOutcome
from domain.services.lifecycle_coordinator import LifecycleCoordinator
from infrastructure.config.config_manager import ConfigManager, LedgerConfig
from infrastructure.store.context_store import ContextStore
from infrastructure.store.file_lock import FileLock
from shared.constants import SUBAGENT_START_EVENT, SUBAGENT_STOP_EVENT
from shared.structured_logging import DEFAULT_LOG_DIR, StructuredLogger, set_log_level

# モジュールレベルのロガー
_logger = StructuredLogger(name="SubagentEventHook", log_dir=DEFAULT_LOG_DIR)

_SEPARATOR = "─" * 41


def start_envelope() -> Dict[str, Any]:
    return {"hookSpecificOutput": {"hookEventName": SUBAGENT_START_EVENT}}


def preview(text: str, length: int) -> str:
    """先頭length文字（切り詰め時は末尾に...）"""
    text = text or ""
    return text[:length] + ("..." if len(text) > length else "")


def build_coordinator(config: LedgerConfig) -> LifecycleCoordinator:
    """設定からストアとコーディネータを組み立てる"""
    store_path = ContextStore.resolve_store_path(config.project_dir, config.store_path)
    lock = FileLock(
        store_path.with_name(store_path.name + ".lock"),
        timeout=config.lock_timeout_seconds,
    )
    return LifecycleCoordinator(ContextStore(store_path, lock=lock))


def log_start(outcome: StartOutcome, preview_length: int) -> None:
    context = outcome.context
    _logger.log("Saved agent context:", context.agent_id)
    _logger.log("Context includes:")
    _logger.log("  - Prompt:", preview(context.prompt, preview_length))
    _logger.log("  - Tool Use ID:", context.tool_use_id)
    _logger.log("  - Timestamp:", context.timestamp)
    if not outcome.ok:
        _logger.warning(f"SubagentStart reasons: {[r.value for r in outcome.reasons]}")


def _log_paths(title: str, marker: str, paths: List[str]) -> None:
    if not paths:
        return
    _logger.log(title, len(paths))
    for path in paths:
        _logger.log(f"  {marker}", path)


def log_summary(summary: EditSummary, preview_length: int) -> None:
    """Stop時のファイル操作サマリを出力"""
    _logger.log(_SEPARATOR)
    _logger.log("Agent Analysis Complete")
    _logger.log(_SEPARATOR)
    _logger.log("Agent Type:", summary.subagent_type)
    _logger.log("Agent Prompt:", preview(summary.agent_prompt, preview_length))

    if summary.agent_file:
        _logger.log("Agent Definition:", summary.agent_file)

    _log_paths("Preloaded Skills:", "-", summary.agent_preloaded_skills_files)
    _log_paths("Files Created:", "+", summary.agent_new_files)
    _log_paths("Files Edited:", "~", summary.agent_edited_files)
    _log_paths("Files Deleted:", "-", summary.agent_deleted_files)

    if not summary.has_file_operations:
        _logger.log("No file operations detected")
    _logger.log(_SEPARATOR)


def handle_start(
    data: Dict[str, Any], config: LedgerConfig, coordinator: LifecycleCoordinator
) -> Dict[str, Any]:
    agent_id = data.get("agent_id", "")
    _logger.log("SubagentStart hook triggered")
    _logger.log("Agent ID:", agent_id)
    _logger.log("Agent Type:", data.get("agent_type", ""))
    _logger.log("Session ID:", data.get("session_id", ""))

    if not agent_id:
        _logger.warning("Missing agent_id, skip saving context")
        return start_envelope()

    outcome = coordinator.start(
        agent_id=agent_id,
        agent_type=data.get("agent_type", "") or "",
        session_id=data.get("session_id", "") or "",
        cwd=data.get("cwd", "") or "",
        transcript_path=data.get("transcript_path", "") or "",
    )
    log_start(outcome, config.prompt_preview_length)
    return start_envelope()


def handle_stop(
    data: Dict[str, Any], config: LedgerConfig, coordinator: LifecycleCoordinator
) -> Dict[str, Any]:
    agent_id = data.get("agent_id", "")
    agent_transcript_path = data.get("agent_transcript_path")
    _logger.log("SubagentStop hook triggered")
    _logger.log("Agent ID:", agent_id)
    _logger.log("Agent Transcript:", agent_transcript_path)

    if not agent_id:
        _logger.warning("Missing agent_id, skip analysis")
        return {}

    outcome: StopOutcome = coordinator.stop(agent_id, agent_transcript_path)
    log_summary(outcome.summary, config.prompt_preview_length)
    if not outcome.ok:
        _logger.warning(f"SubagentStop reasons: {[r.value for r in outcome.reasons]}")
    return {}


def dispatch(
    data: Dict[str, Any],
    event_name: Optional[str] = None,
    config: Optional[LedgerConfig] = None,
    coordinator: Optional[LifecycleCoordinator] = None,
) -> Dict[str, Any]:
    """イベント名に応じて処理し、stdoutに出す応答を返す

    Args:
        data: フック入力JSON
        event_name: イベント名（未指定時はdata["hook_event_name"]）
        config: 設定（未指定時はConfigManagerから読み込み）
        coordinator: LifecycleCoordinator（未指定時は設定から生成）

    Returns:
        応答JSON（SubagentStartはhookSpecificOutput付き、それ以外は空）
    """
    event_name = event_name or data.get("hook_event_name", "")
    if event_name not in (SUBAGENT_START_EVENT, SUBAGENT_STOP_EVENT):
        _logger.warning(f"Unknown event: {event_name}")
        return {}

    try:
        if config is None:
            # Stop入力にはcwdが無いため、Start/Stopとも CLAUDE_PROJECT_DIR → プロセスcwd で解決する
            config = ConfigManager().load()
        set_log_level(config.log_level)

        if not config.enabled:
            _logger.info(f"subagent_tracking無効、{event_name}をスキップ")
        else:
            coordinator = coordinator or build_coordinator(config)
            if event_name == SUBAGENT_START_EVENT:
                return handle_start(data, config, coordinator)
            return handle_stop(data, config, coordinator)
    except Exception as e:
        _logger.exception(f"Error handling {event_name}: {e}")

    return start_envelope() if event_name == SUBAGENT_START_EVENT else {}


def main():
    """メインエントリーポイント"""
    envelope: Dict[str, Any] = {}
    try:
        _logger.info("SubagentEventHook invoked")
        event_arg = sys.argv[1] if len(sys.argv) > 1 else None
        if event_arg == SUBAGENT_START_EVENT:
            envelope = start_envelope()

        raw = ""
        try:
            raw = sys.stdin.read()
            _logger.debug(f"stdin raw length: {len(raw)}")
            data = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as e:
            # JSON解析失敗時は応答のみ返す
            _logger.error(f"JSON decode error: {e}, raw: {raw[:200]}")
            data = {}
        if not isinstance(data, dict):
            data = {}

        event_name = data.get("hook_event_name") or event_arg
        if event_name == SUBAGENT_START_EVENT:
            envelope = start_envelope()
        if data:
            envelope = dispatch(data, event_name=event_name)

    except Exception as e:
        # 予期せぬ例外がstderrに漏れてClaude Codeの動作に影響しないようにする
        _logger.exception(f"Unexpected error: {e}")

    print(json.dumps(envelope))
    # 処理をブロックしない
    sys.exit(0)


if __name__ == "__main__":
    main()
