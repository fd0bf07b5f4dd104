"""pytest設定 - テストモジュールのパス設定と共通フィクスチャ"""

import os
import sys
import tempfile
from pathlib import Path

import pytest

# ログ出力先をテスト用一時ディレクトリへ（shared.structured_logging のimport前に設定）
os.environ.setdefault("SUBAGENT_LEDGER_LOG_DIR", tempfile.mkdtemp(prefix="subagent-ledger-logs-"))

# プロジェクトルートとsrcディレクトリのパス
project_root = Path(__file__).parent.parent
src_dir = project_root / "src"

# 正しいパスを先頭に追加（既存の場合は一度削除してから先頭へ）
for path in [str(src_dir), str(project_root), str(Path(__file__).parent)]:
    if path in sys.path:
        sys.path.remove(path)
    sys.path.insert(0, path)

from infrastructure.store.context_store import ContextStore  # noqa: E402
from transcript_builders import write_jsonl  # noqa: E402


# === フィクスチャ ===

@pytest.fixture
def store_path(tmp_path):
    """テスト用ストアドキュメントのパス"""
    return tmp_path / ".claude" / "logs" / "subagent-tasks.json"


@pytest.fixture
def store(store_path):
    """テスト用ContextStore"""
    return ContextStore(store_path)


@pytest.fixture
def make_transcript(tmp_path):
    """エントリ列から.jsonlファイルを作るファクトリ"""

    def _make(entries, name="transcript.jsonl"):
        return write_jsonl(tmp_path / name, entries)

    return _make
