"""バージョン情報"""

__version__ = "0.3.0"
