"""設定管理 - .subagent-ledger/config.yaml の読み込み"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from shared.constants import (
    CONFIG_DIR_NAME,
    CONFIG_FILENAME,
    DEFAULT_PROMPT_PREVIEW_LENGTH,
    DEFAULT_STALE_CONTEXT_MINUTES,
    DEFAULT_STORE_RELATIVE_PATH,
)
from shared.structured_logging import DEFAULT_LOG_DIR, StructuredLogger

_logger = StructuredLogger(name="ConfigManager", log_dir=DEFAULT_LOG_DIR)


@dataclass
class LedgerConfig:
    """subagent_tracking / logging セクションの解決済み設定"""

    enabled: bool = True
    store_path: str = DEFAULT_STORE_RELATIVE_PATH
    lock_timeout_seconds: Optional[float] = None
    stale_context_minutes: int = DEFAULT_STALE_CONTEXT_MINUTES
    prompt_preview_length: int = DEFAULT_PROMPT_PREVIEW_LENGTH
    log_level: str = "INFO"
    project_dir: Optional[str] = field(default=None)


class ConfigManager:
    """設定ファイルの探索と読み込み"""

    def __init__(
        self,
        config_path: Optional[Union[str, Path]] = None,
        project_dir: Optional[Union[str, Path]] = None,
    ):
        """初期化

        Args:
            config_path: 明示的な設定ファイルパス（指定時は探索しない）
            project_dir: プロジェクトディレクトリ（探索候補に追加）
        """
        self.project_dir = self._resolve_project_dir(project_dir)
        if config_path is not None:
            self.config_path: Optional[Path] = Path(config_path)
        else:
            self.config_path = self._find_config_path(project_dir)
        self.config: Dict[str, Any] = self._read_config()

    @staticmethod
    def _resolve_project_dir(project_dir: Optional[Union[str, Path]]) -> Optional[str]:
        base = os.environ.get("CLAUDE_PROJECT_DIR") or project_dir
        return str(base) if base else None

    @staticmethod
    def candidate_paths(project_dir: Optional[Union[str, Path]] = None) -> List[Path]:
        """設定ファイルの探索候補

        探索順序:
        1. CLAUDE_PROJECT_DIR環境変数
        2. 引数 project_dir
        3. Path.cwd()
        """
        candidates: List[Path] = []
        env_dir = os.environ.get("CLAUDE_PROJECT_DIR")
        if env_dir:
            candidates.append(Path(env_dir) / CONFIG_DIR_NAME / CONFIG_FILENAME)
        if project_dir:
            candidate = Path(project_dir) / CONFIG_DIR_NAME / CONFIG_FILENAME
            if candidate not in candidates:
                candidates.append(candidate)
        try:
            cwd_candidate = Path.cwd() / CONFIG_DIR_NAME / CONFIG_FILENAME
            if cwd_candidate not in candidates:
                candidates.append(cwd_candidate)
        except OSError:
            pass
        return candidates

    def _find_config_path(self, project_dir: Optional[Union[str, Path]]) -> Optional[Path]:
        candidates = self.candidate_paths(project_dir)
        for candidate in candidates:
            if candidate.exists():
                return candidate
        _logger.debug(f"config.yaml未発見: 探索パス={[str(c) for c in candidates]}")
        return None

    def _read_config(self) -> Dict[str, Any]:
        """YAMLを読み込む（不在・不正時は空dict）"""
        if self.config_path is None or not self.config_path.exists():
            return {}
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            _logger.warning(f"設定ファイル読み込み失敗、デフォルト値を使用: {self.config_path} ({e})")
            return {}
        if not isinstance(data, dict):
            if data is not None:
                _logger.warning(f"設定ファイルの形式が不正、デフォルト値を使用: {self.config_path}")
            return {}
        return data

    def load(self) -> LedgerConfig:
        """LedgerConfigに解決する（不正な値はデフォルトに戻す）"""
        tracking = self.config.get("subagent_tracking") or {}
        logging_section = self.config.get("logging") or {}
        if not isinstance(tracking, dict):
            tracking = {}
        if not isinstance(logging_section, dict):
            logging_section = {}

        defaults = LedgerConfig()
        return LedgerConfig(
            enabled=bool(tracking.get("enabled", defaults.enabled)),
            store_path=str(tracking.get("store_path") or defaults.store_path),
            lock_timeout_seconds=_as_number(
                tracking.get("lock_timeout_seconds"), defaults.lock_timeout_seconds, float
            ),
            stale_context_minutes=_as_number(
                tracking.get("stale_context_minutes"), defaults.stale_context_minutes, int
            ),
            prompt_preview_length=_as_number(
                tracking.get("prompt_preview_length"), defaults.prompt_preview_length, int
            ),
            log_level=str(logging_section.get("level") or defaults.log_level).upper(),
            project_dir=self.project_dir,
        )


def _as_number(value, default, cast):
    if value is None or isinstance(value, bool):
        return default
    try:
        number = cast(value)
    except (TypeError, ValueError):
        _logger.warning(f"数値設定が不正、デフォルト値を使用: {value!r}")
        return default
    return number if number > 0 else default
