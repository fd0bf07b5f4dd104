"""構造化ログ

フックはstdout/stderrをホスト（Claude Code）との通信に使うため、
ログはすべてJSON Lines形式でファイルに出力する。
ログ出力の失敗が処理結果に影響しないこと（ハンドラ生成失敗時はNullHandler）。
"""

import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

LOG_FILENAME = "subagent-ledger.jsonl"
LOGGER_NAMESPACE = "subagent_ledger"


def _resolve_default_log_dir() -> Path:
    """ログディレクトリを解決する

    優先順:
    1. 環境変数 SUBAGENT_LEDGER_LOG_DIR
    2. ~/.subagent-ledger/logs
    """
    env_dir = os.environ.get("SUBAGENT_LEDGER_LOG_DIR")
    if env_dir:
        return Path(env_dir)
    return Path.home() / ".subagent-ledger" / "logs"


DEFAULT_LOG_DIR = _resolve_default_log_dir()

# ルートロガー(WARNING)を継承しないよう名前空間のレベルを明示
if logging.getLogger(LOGGER_NAMESPACE).level == logging.NOTSET:
    logging.getLogger(LOGGER_NAMESPACE).setLevel(logging.INFO)

# log_dir単位でハンドラを共有する（同一ファイルへの多重オープン防止）
_handlers: Dict[str, logging.Handler] = {}
_handlers_lock = threading.Lock()


class JsonLineFormatter(logging.Formatter):
    """1レコード1行のJSONフォーマッタ"""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "pid": record.process,
            "message": record.getMessage(),
        }
        label = getattr(record, "label", None)
        if label is not None:
            payload["label"] = label
            payload["value"] = getattr(record, "value", None)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def _get_handler(log_dir: Path) -> logging.Handler:
    key = str(log_dir)
    with _handlers_lock:
        handler = _handlers.get(key)
        if handler is not None:
            return handler
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(log_dir / LOG_FILENAME, encoding="utf-8")
            handler.setFormatter(JsonLineFormatter())
        except OSError:
            handler = logging.NullHandler()
        _handlers[key] = handler
        return handler


class StructuredLogger:
    """JSON Linesでファイル出力するロガー"""

    def __init__(self, name: str, log_dir: Optional[Union[str, Path]] = None):
        """初期化

        Args:
            name: ロガー名（クラス名・フック名など）
            log_dir: ログ出力ディレクトリ（デフォルト: DEFAULT_LOG_DIR）
        """
        self.name = name
        self.log_dir = Path(log_dir) if log_dir is not None else DEFAULT_LOG_DIR
        self._logger = logging.getLogger(f"{LOGGER_NAMESPACE}.{name}")
        handler = _get_handler(self.log_dir)
        if handler not in self._logger.handlers:
            self._logger.addHandler(handler)

    def debug(self, message: str) -> None:
        self._logger.debug(message)

    def info(self, message: str) -> None:
        self._logger.info(message)

    def warning(self, message: str) -> None:
        self._logger.warning(message)

    def error(self, message: str) -> None:
        self._logger.error(message)

    def exception(self, message: str) -> None:
        """例外情報付きでERRORログ出力（exceptブロック内で使用）"""
        self._logger.exception(message)

    def log(self, label: str, value: Any = None) -> None:
        """ラベル付きの値をINFOで出力

        Args:
            label: 項目名（例: "Agent ID:"）
            value: 値（JSONシリアライズできない場合はstr化）
        """
        self._logger.info(
            f"{label} {value}" if value is not None else label,
            extra={"label": label, "value": value},
        )


def set_log_level(level: Union[str, int]) -> None:
    """全StructuredLoggerのログレベルを設定

    Args:
        level: "DEBUG" / "INFO" 等、またはlogging定数
    """
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            resolved = logging.INFO
        level = resolved
    logging.getLogger(LOGGER_NAMESPACE).setLevel(level)
