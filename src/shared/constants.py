"""共通定数"""

# 設定ディレクトリ・ファイル名
CONFIG_DIR_NAME = ".subagent-ledger"
CONFIG_FILENAME = "config.yaml"

# StartContextを保存するJSONドキュメント（プロジェクトルートからの相対パス）
DEFAULT_STORE_RELATIVE_PATH = ".claude/logs/subagent-tasks.json"

# 開始コンテキストの放置判定（分）
# SubagentStopが発火しなかったエントリのprune対象閾値
DEFAULT_STALE_CONTEXT_MINUTES = 24 * 60

# ログ出力時のプロンプトプレビュー長
DEFAULT_PROMPT_PREVIEW_LENGTH = 100

# サブエージェントを起動するツール名
# Claude Codeのバージョンにより Task / Agent のどちらかで記録される
SUBAGENT_TOOL_NAMES = frozenset(["Task", "Agent"])

# subagent_type未指定時のデフォルト
DEFAULT_SUBAGENT_TYPE = "general-purpose"

# ファイル操作ツール
WRITE_TOOL_NAMES = frozenset(["Write"])
EDIT_TOOL_NAMES = frozenset(["Edit", "MultiEdit"])
NOTEBOOK_TOOL_NAMES = frozenset(["NotebookEdit"])
READ_TOOL_NAMES = frozenset(["Read"])
SHELL_TOOL_NAMES = frozenset(["Bash"])

# フックイベント名
SUBAGENT_START_EVENT = "SubagentStart"
SUBAGENT_STOP_EVENT = "SubagentStop"
