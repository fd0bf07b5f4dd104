"""ContextStoreのテスト

- save→load のラウンドトリップ
- deleteの冪等性
- 並列saveでキーが失われないこと
- 親トランスクリプトからの起動tool_use特定
- 破損ドキュメント・ロック失敗時の挙動
- prune / find_stale
"""

import json
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from infrastructure.store.context_store import ContextStore, StoreUnavailableError
from infrastructure.store.file_lock import LockTimeoutError
from transcript_builders import agent_progress, spawn, tool_result


def _save(store, agent_id, agent_type="general-purpose", transcript_path=""):
    return store.save(agent_id, agent_type, "session-1", "/work", transcript_path)


class TestSaveLoad:
    """save / load / delete の基本動作"""

    def test_round_trip(self, store):
        """保存した5フィールドがloadで復元される"""
        store.save("agent-1", "coder", "session-1", "/work", "/tmp/leader.jsonl")

        context = store.load("agent-1")

        assert context is not None
        assert context.agent_id == "agent-1"
        assert context.agent_type == "coder"
        assert context.session_id == "session-1"
        assert context.cwd == "/work"
        assert context.transcript_path == "/tmp/leader.jsonl"
        assert context.timestamp

    def test_load_unknown_returns_none(self, store):
        assert store.load("missing") is None

    def test_load_without_document(self, store, store_path):
        """ドキュメント未作成でもエラーにならない"""
        assert not store_path.exists()
        assert store.load("agent-1") is None
        assert store.list_contexts() == []

    def test_delete_removes_key(self, store, store_path):
        _save(store, "agent-1")
        _save(store, "agent-2")

        store.delete("agent-1")

        document = json.loads(store_path.read_text(encoding="utf-8"))
        assert "agent-1" not in document
        assert "agent-2" in document

    def test_delete_is_idempotent(self, store):
        """存在しないキー・二重削除でもエラーにならない"""
        _save(store, "agent-1")

        store.delete("agent-1")
        store.delete("agent-1")
        store.delete("never-saved")

        assert store.load("agent-1") is None

    def test_restart_overwrites(self, store):
        """同じagent_idの再保存は後勝ち"""
        _save(store, "agent-1", agent_type="coder")
        _save(store, "agent-1", agent_type="reviewer")

        assert store.load("agent-1").agent_type == "reviewer"
        assert len(store.list_contexts()) == 1

    def test_document_format(self, store, store_path):
        """永続化形式は { agent_id: StartContext } でtoolUseIdキーを持つ"""
        _save(store, "agent-1")

        document = json.loads(store_path.read_text(encoding="utf-8"))
        assert set(document) == {"agent-1"}
        assert document["agent-1"]["toolUseId"] == ""
        assert document["agent-1"]["prompt"] == ""

    def test_no_temp_files_left(self, store, store_path):
        """アトミック書き込み後に一時ファイルが残らない"""
        for i in range(3):
            _save(store, f"agent-{i}")

        leftovers = [p.name for p in store_path.parent.iterdir() if p.suffix == ".tmp"]
        assert leftovers == []


class TestConcurrentSave:
    """並列保存"""

    def test_concurrent_saves_keep_all_keys(self, store_path):
        """別インスタンス・別スレッドからの並列saveで全キーが残る"""
        agent_ids = [f"agent-{i}" for i in range(20)]

        def save_one(agent_id):
            return _save(ContextStore(store_path), agent_id)

        with ThreadPoolExecutor(max_workers=8) as executor:
            list(executor.map(save_one, agent_ids))

        document = json.loads(store_path.read_text(encoding="utf-8"))
        assert sorted(document) == sorted(agent_ids)

    def test_shared_instance_concurrent_saves(self, store):
        """同一インスタンスを共有するスレッドからの並列save"""
        agent_ids = [f"agent-{i}" for i in range(10)]

        with ThreadPoolExecutor(max_workers=5) as executor:
            list(executor.map(lambda agent_id: _save(store, agent_id), agent_ids))

        assert sorted(c.agent_id for c in store.list_contexts()) == sorted(agent_ids)


class TestSpawnCorrelation:
    """親トランスクリプトからの起動tool_use特定"""

    def test_nearest_spawn_recorded(self, store, make_transcript):
        """未完了で種別一致の起動tool_useのprompt/idを保存する"""
        leader = make_transcript([spawn("toolu_1", "Implement the parser", "coder")])

        context = _save(store, "agent-1", "coder", str(leader))

        assert context.tool_use_id == "toolu_1"
        assert context.prompt == "Implement the parser"
        assert store.load("agent-1").tool_use_id == "toolu_1"

    def test_linked_spawn_preferred(self, store, make_transcript):
        """agent_progressで紐付いた起動tool_useが優先される"""
        leader = make_transcript([
            spawn("toolu_1", "first", "coder"),
            spawn("toolu_2", "second", "coder"),
            agent_progress("agent-2", "toolu_2"),
        ])

        context = _save(store, "agent-2", "coder", str(leader))

        assert context.tool_use_id == "toolu_2"
        assert context.prompt == "second"

    def test_parallel_spawns_are_not_shared(self, store, make_transcript):
        """同種の並列起動では割り当て済みの起動tool_useを避ける"""
        leader = make_transcript([
            spawn("toolu_1", "first", "coder"),
            spawn("toolu_2", "second", "coder"),
        ])

        first = _save(store, "agent-a", "coder", str(leader))
        second = _save(store, "agent-b", "coder", str(leader))

        assert first.tool_use_id == "toolu_1"
        assert second.tool_use_id == "toolu_2"

    def test_completed_spawn_skipped(self, store, make_transcript):
        """tool_result済みの起動tool_useは候補外"""
        leader = make_transcript([
            spawn("toolu_1", "done already", "coder"),
            tool_result("toolu_1"),
            spawn("toolu_2", "running", "coder"),
        ])

        context = _save(store, "agent-1", "coder", str(leader))

        assert context.tool_use_id == "toolu_2"

    def test_correlation_miss_saves_empty(self, store, make_transcript):
        """起動tool_useが見つからない場合はprompt/tool_use_idを空で保存"""
        leader = make_transcript([spawn("toolu_1", "other type", "reviewer")])

        context = _save(store, "agent-1", "coder", str(leader))

        assert context.tool_use_id == ""
        assert context.prompt == ""
        assert store.load("agent-1") is not None

    def test_missing_leader_transcript(self, store, tmp_path):
        """親トランスクリプトが存在しなくても保存は成功する"""
        context = _save(store, "agent-1", "coder", str(tmp_path / "missing.jsonl"))

        assert context.tool_use_id == ""
        assert store.load("agent-1") is not None

    def test_injected_spawn_locator(self, store_path):
        """spawn_locatorは差し替え可能"""
        locator = MagicMock(return_value=[])
        store = ContextStore(store_path, spawn_locator=locator)

        store.save("agent-1", "coder", "session-1", "/work", "/leader.jsonl")

        locator.assert_called_once_with("/leader.jsonl", "agent-1", "coder")


class TestCorruptDocument:
    """破損・異常ドキュメント"""

    def test_corrupt_document_treated_as_empty(self, store, store_path):
        store_path.parent.mkdir(parents=True)
        store_path.write_text("{not json", encoding="utf-8")

        assert store.load("agent-1") is None

        _save(store, "agent-1")
        document = json.loads(store_path.read_text(encoding="utf-8"))
        assert list(document) == ["agent-1"]

    def test_non_object_document_treated_as_empty(self, store, store_path):
        store_path.parent.mkdir(parents=True)
        store_path.write_text("[1, 2, 3]", encoding="utf-8")

        assert store.list_contexts() == []

    def test_empty_document(self, store, store_path):
        store_path.parent.mkdir(parents=True)
        store_path.write_text("", encoding="utf-8")

        assert store.load("agent-1") is None

    def test_missing_fields_tolerated(self, store, store_path):
        """旧形式（フィールド欠損）のエントリも読み込める"""
        store_path.parent.mkdir(parents=True)
        store_path.write_text(json.dumps({"agent-1": {"agent_type": "coder"}}), encoding="utf-8")

        context = store.load("agent-1")

        assert context.agent_type == "coder"
        assert context.tool_use_id == ""


class TestStoreUnavailable:
    """ロック取得・読み書き失敗"""

    def test_lock_timeout_raises_store_unavailable(self, store_path):
        lock = MagicMock()
        lock.acquire.side_effect = LockTimeoutError("timeout")
        store = ContextStore(store_path, lock=lock, spawn_locator=lambda *args: [])

        with pytest.raises(StoreUnavailableError):
            store.save("agent-1", "coder", "s", "/work", "")
        with pytest.raises(StoreUnavailableError):
            store.load("agent-1")
        lock.release.assert_not_called()

    def test_lock_released_after_write_failure(self, store_path):
        """書き込み失敗時もロックは解放される"""
        lock = MagicMock()
        store = ContextStore(store_path, lock=lock, spawn_locator=lambda *args: [])
        # 親ディレクトリの位置にファイルを置いて書き込みを失敗させる
        store_path.parent.parent.mkdir(parents=True)
        store_path.parent.write_text("not a directory", encoding="utf-8")

        with pytest.raises(StoreUnavailableError):
            store.save("agent-1", "coder", "s", "/work", "")
        lock.release.assert_called_once()


class TestPrune:
    """放置コンテキストの削除"""

    def _write(self, store_path, document):
        store_path.parent.mkdir(parents=True, exist_ok=True)
        store_path.write_text(json.dumps(document), encoding="utf-8")

    def test_prune_removes_old_and_unparsable(self, store, store_path):
        now = datetime(2026, 1, 2, 12, 0, tzinfo=timezone.utc)
        self._write(store_path, {
            "fresh": {"agent_id": "fresh", "timestamp": (now - timedelta(minutes=5)).isoformat()},
            "old": {"agent_id": "old", "timestamp": (now - timedelta(days=2)).isoformat()},
            "broken": {"agent_id": "broken", "timestamp": "yesterday"},
        })

        removed = store.prune(timedelta(hours=1), now=now)

        assert sorted(removed) == ["broken", "old"]
        assert [c.agent_id for c in store.list_contexts()] == ["fresh"]

    def test_find_stale_does_not_modify(self, store, store_path):
        now = datetime(2026, 1, 2, 12, 0, tzinfo=timezone.utc)
        self._write(store_path, {
            "old": {"agent_id": "old", "timestamp": (now - timedelta(days=2)).isoformat()},
        })

        stale = store.find_stale(timedelta(hours=1), now=now)

        assert [c.agent_id for c in stale] == ["old"]
        assert store.load("old") is not None

    def test_prune_nothing_to_remove(self, store):
        _save(store, "agent-1")

        assert store.prune(timedelta(hours=1)) == []
        assert store.load("agent-1") is not None


class TestResolveStorePath:
    """ストアパス解決"""

    def test_explicit_project_dir(self, tmp_path):
        path = ContextStore.resolve_store_path(tmp_path)
        assert path == tmp_path / ".claude" / "logs" / "subagent-tasks.json"

    def test_env_project_dir(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CLAUDE_PROJECT_DIR", str(tmp_path))
        path = ContextStore.resolve_store_path()
        assert path == tmp_path / ".claude" / "logs" / "subagent-tasks.json"

    def test_absolute_relative_used_as_is(self, tmp_path):
        absolute = tmp_path / "elsewhere" / "store.json"
        assert ContextStore.resolve_store_path("/ignored", str(absolute)) == absolute

    def test_cwd_fallback(self, tmp_path, monkeypatch):
        monkeypatch.delenv("CLAUDE_PROJECT_DIR", raising=False)
        monkeypatch.chdir(tmp_path)
        path = ContextStore.resolve_store_path()
        assert path == tmp_path / ".claude" / "logs" / "subagent-tasks.json"
