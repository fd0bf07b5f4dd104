"""設定管理"""

from infrastructure.config.config_manager import ConfigManager, LedgerConfig

__all__ = ["ConfigManager", "LedgerConfig"]
