"""TranscriptScanner - トランスクリプト(.jsonl)からサブエージェントのツール操作を抽出

トランスクリプトはホストが追記中に読まれることがあるため、
壊れた行・書きかけの末尾行はスキップして走査を継続する。
走査は遅延・単方向・一度きり（消費済みのTranscriptScanは再走査しない）。
"""

import json
import logging
import os
import re
import shlex
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple, Union

from domain.models.records import (
    FileOperation,
    RecordKind,
    SpawnMatch,
    TranscriptRecord,
)
from shared.constants import (
    DEFAULT_SUBAGENT_TYPE,
    EDIT_TOOL_NAMES,
    NOTEBOOK_TOOL_NAMES,
    READ_TOOL_NAMES,
    SHELL_TOOL_NAMES,
    SUBAGENT_TOOL_NAMES,
    WRITE_TOOL_NAMES,
)

logger = logging.getLogger(__name__)

# スキルロード時にホストが挿入するメタメッセージ
_SKILL_BASE_DIR_PATTERN = re.compile(r"Base directory for this skill:\s*(\S+)")
_SKILL_FILE_PATTERN = re.compile(r"(\S*/skills/[^\s/]+/SKILL\.md)")
# エージェント定義ファイル（.claude/agents/<name>.md）
_AGENT_DEFINITION_PATTERN = re.compile(r"(\S*\.claude/agents/[^\s/\"'`]+\.md)")

# シェルの制御演算子（shlexのpunctuation_charsで分割されたトークン）
_CONTROL_TOKEN_PATTERN = re.compile(r"^[;&|()<>]+$")
_ENV_ASSIGNMENT_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")
_GLOB_CHARS = frozenset("*?[")
_DELETE_COMMANDS = frozenset(["rm", "unlink"])


# === エントリ読み込み ===

def _content_blocks(message: Any) -> List[Dict[str, Any]]:
    """message.contentをブロックのリストに正規化"""
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def _tool_use_ids(entry: Dict[str, Any]) -> Set[str]:
    """エントリ内のtool_use idを収集（agent_progressのネストを含む）"""
    if entry.get("type") == "progress":
        data = entry.get("data")
        if isinstance(data, dict) and isinstance(data.get("message"), dict):
            return _tool_use_ids(data["message"])
        return set()
    ids = set()
    for block in _content_blocks(entry.get("message")):
        if block.get("type") == "tool_use" and isinstance(block.get("id"), str):
            ids.add(block["id"])
    return ids


class EntryAttributor:
    """エントリが対象サブエージェントの実行に属するかを判定する

    判定ルール:
    - agent_id / tool_use_id とも未指定: 全エントリが対象
    - リンク情報（agentId / parentToolUseID）を持つエントリ:
      agentIdが一致する、またはparentToolUseIDが既知idに含まれる場合に対象。
      対象エントリのtool_use idは既知idに追加する（ネストした呼び出しを追跡）
    - リンク情報を持たないエントリ:
      先頭エントリがsidechainならサブエージェント専用トランスクリプトとみなし全て対象。
      それ以外は起動エントリ（tool_use.id == tool_use_id）以降のsidechainエントリを対象とし、
      最初の非sidechainエントリ（親の階層に戻った時点）で打ち切る
    """

    def __init__(self, agent_id: Optional[str] = None, tool_use_id: Optional[str] = None):
        self._agent_id = agent_id or None
        self._tool_use_id = tool_use_id or None
        self._known_ids: Set[str] = {self._tool_use_id} if self._tool_use_id else set()
        self._first = True
        self._dedicated = False
        self._in_window = False

    def belongs(self, entry: Dict[str, Any]) -> bool:
        first, self._first = self._first, False
        if self._agent_id is None and self._tool_use_id is None:
            return True

        entry_agent_id = entry.get("agentId")
        parent_id = entry.get("parentToolUseID")
        if entry_agent_id or parent_id:
            matched = bool(
                (self._agent_id and entry_agent_id == self._agent_id)
                or (parent_id and parent_id in self._known_ids)
            )
            if matched:
                self._known_ids.update(_tool_use_ids(entry))
            return matched

        if first and entry.get("isSidechain"):
            self._dedicated = True
        if self._dedicated:
            return True

        if self._in_window:
            if entry.get("isSidechain"):
                self._known_ids.update(_tool_use_ids(entry))
                return True
            self._in_window = False
            return False

        if self._tool_use_id and self._tool_use_id in _tool_use_ids(entry):
            # 起動エントリ自体は親の実行に属する
            self._in_window = True
        return False


# === レコード抽出 ===

def parse_shell_file_effects(command: str) -> List[Tuple[FileOperation, str]]:
    """シェルコマンドからファイル削除・移動の効果を抽出

    対象: rm / unlink / git rm（DELETE）、mv（移動元DELETE + 移動先CREATE）。
    オプション・globを含むオペランドは無視する。

    Args:
        command: Bashツールのcommand

    Returns:
        (操作, パス) のリスト（コマンド中の出現順）
    """
    try:
        lexer = shlex.shlex(command, posix=True, punctuation_chars=True)
        lexer.whitespace_split = True
        tokens = list(lexer)
    except ValueError:
        return []

    segments: List[List[str]] = [[]]
    skip_next = False
    for token in tokens:
        if skip_next:
            skip_next = False
            continue
        if _CONTROL_TOKEN_PATTERN.match(token):
            if "<" in token or ">" in token:
                # リダイレクト: fd番号とリダイレクト先はオペランドではない
                if segments[-1] and segments[-1][-1].isdigit():
                    segments[-1].pop()
                skip_next = True
                continue
            segments.append([])
        else:
            segments[-1].append(token)

    effects: List[Tuple[FileOperation, str]] = []
    for segment in segments:
        words = list(segment)
        while words and (_ENV_ASSIGNMENT_PATTERN.match(words[0]) or words[0] == "sudo"):
            words.pop(0)
        if not words:
            continue

        program = os.path.basename(words[0])
        args = words[1:]
        if program == "git" and args[:1] == ["rm"]:
            program, args = "rm", args[1:]

        operands = _operands(args)
        if program in _DELETE_COMMANDS:
            effects.extend((FileOperation.DELETE, path) for path in operands)
        elif program == "mv" and len(operands) >= 2:
            *sources, destination = operands
            into_directory = len(sources) > 1 or destination.endswith("/")
            for source in sources:
                effects.append((FileOperation.DELETE, source))
                target = (
                    os.path.join(destination, os.path.basename(source.rstrip("/")))
                    if into_directory
                    else destination
                )
                effects.append((FileOperation.CREATE, target))
    return effects


def _operands(args: List[str]) -> List[str]:
    operands = []
    options_done = False
    for arg in args:
        if not options_done and arg == "--":
            options_done = True
            continue
        if not options_done and arg.startswith("-"):
            continue
        if any(char in _GLOB_CHARS for char in arg):
            continue
        operands.append(arg)
    return operands


def _meta_records(text: str, index: int, timestamp: Optional[str]) -> Iterator[TranscriptRecord]:
    """メタメッセージからスキル・エージェント定義のロードを抽出"""
    for match in _SKILL_BASE_DIR_PATTERN.finditer(text):
        yield TranscriptRecord(
            index=index,
            kind=RecordKind.SKILL_PRELOAD,
            timestamp=timestamp,
            file_path=os.path.join(match.group(1), "SKILL.md"),
        )
    for match in _SKILL_FILE_PATTERN.finditer(text):
        yield TranscriptRecord(
            index=index,
            kind=RecordKind.SKILL_PRELOAD,
            timestamp=timestamp,
            file_path=match.group(1),
        )
    for match in _AGENT_DEFINITION_PATTERN.finditer(text):
        yield TranscriptRecord(
            index=index,
            kind=RecordKind.DEFINITION_LOAD,
            timestamp=timestamp,
            file_path=match.group(1),
        )


def _tool_use_records(
    block: Dict[str, Any], index: int, timestamp: Optional[str]
) -> Iterator[TranscriptRecord]:
    name = block.get("name") or ""
    tool_input = block.get("input") if isinstance(block.get("input"), dict) else {}
    base = {
        "index": index,
        "kind": RecordKind.TOOL_USE,
        "timestamp": timestamp,
        "tool_use_id": block.get("id"),
        "tool_name": name,
    }

    if name in SHELL_TOOL_NAMES:
        command = tool_input.get("command")
        effects = parse_shell_file_effects(command) if isinstance(command, str) else []
        if not effects:
            yield TranscriptRecord(**base)
        for operation, path in effects:
            yield TranscriptRecord(**base, file_path=path, operation=operation)
        return

    operation = None
    path = tool_input.get("file_path")
    if name in WRITE_TOOL_NAMES:
        operation = FileOperation.WRITE
    elif name in EDIT_TOOL_NAMES:
        operation = FileOperation.EDIT
    elif name in NOTEBOOK_TOOL_NAMES:
        operation = FileOperation.EDIT
        path = tool_input.get("notebook_path")
    elif name in READ_TOOL_NAMES:
        operation = FileOperation.READ

    if operation is None or not isinstance(path, str) or not path:
        yield TranscriptRecord(**base)
    else:
        yield TranscriptRecord(**base, file_path=path, operation=operation)


def _tool_result_record(
    block: Dict[str, Any],
    tool_use_result: Any,
    index: int,
    timestamp: Optional[str],
) -> TranscriptRecord:
    file_path = None
    operation = None
    if isinstance(tool_use_result, dict):
        result_path = tool_use_result.get("filePath")
        result_type = tool_use_result.get("type")
        if isinstance(result_path, str) and result_path:
            if result_type == "create":
                file_path, operation = result_path, FileOperation.CREATE
            elif result_type == "update":
                file_path, operation = result_path, FileOperation.EDIT
    return TranscriptRecord(
        index=index,
        kind=RecordKind.TOOL_RESULT,
        timestamp=timestamp,
        tool_use_id=block.get("tool_use_id"),
        file_path=file_path,
        operation=operation,
        is_error=bool(block.get("is_error")),
    )


def extract_records(entry: Dict[str, Any], index: int) -> Iterator[TranscriptRecord]:
    """トランスクリプト1エントリからレコードを抽出

    Args:
        entry: パース済みJSONエントリ
        index: 行番号（1始まり）
    """
    entry_type = entry.get("type")
    timestamp = entry.get("timestamp")

    if entry_type == "progress":
        data = entry.get("data")
        if isinstance(data, dict) and data.get("type") == "agent_progress":
            nested = data.get("message")
            if isinstance(nested, dict):
                yield from extract_records(nested, index)
        return

    blocks = _content_blocks(entry.get("message"))

    if entry_type == "assistant":
        for block in blocks:
            block_type = block.get("type")
            if block_type == "text" and isinstance(block.get("text"), str):
                yield TranscriptRecord(
                    index=index, kind=RecordKind.TEXT, timestamp=timestamp, text=block["text"]
                )
            elif block_type == "tool_use":
                yield from _tool_use_records(block, index, timestamp)

    elif entry_type == "user":
        is_meta = bool(entry.get("isMeta"))
        results = [block for block in blocks if block.get("type") == "tool_result"]
        # toolUseResultはエントリ単位のため、tool_resultが1件の場合のみ紐付ける
        tool_use_result = entry.get("toolUseResult") if len(results) == 1 else None
        for block in blocks:
            block_type = block.get("type")
            if block_type == "tool_result":
                yield _tool_result_record(block, tool_use_result, index, timestamp)
            elif block_type == "text" and isinstance(block.get("text"), str):
                if is_meta:
                    yield from _meta_records(block["text"], index, timestamp)
                else:
                    yield TranscriptRecord(
                        index=index, kind=RecordKind.TEXT, timestamp=timestamp, text=block["text"]
                    )

    elif entry_type == "system":
        content = entry.get("content")
        if isinstance(content, str):
            yield from _meta_records(content, index, timestamp)


# === 走査 ===

class TranscriptScan:
    """一度きりのレコードイテレータ

    消費後に unreadable（ファイル読み込み不可）と skipped_lines（不正行数）を参照できる。
    """

    def __init__(
        self,
        transcript_path: Optional[Union[str, Path]],
        agent_id: Optional[str] = None,
        tool_use_id: Optional[str] = None,
    ):
        self.transcript_path = transcript_path
        self.agent_id = agent_id
        self.tool_use_id = tool_use_id
        self.unreadable = False
        self.skipped_lines = 0
        self._records = self._generate()

    def __iter__(self) -> "TranscriptScan":
        return self

    def __next__(self) -> TranscriptRecord:
        return next(self._records)

    def _generate(self) -> Iterator[TranscriptRecord]:
        attributor = EntryAttributor(self.agent_id, self.tool_use_id)
        for line_number, entry in self._iter_entries():
            if attributor.belongs(entry):
                yield from extract_records(entry, line_number)

    def _iter_entries(self) -> Iterator[Tuple[int, Dict[str, Any]]]:
        entries = iter_transcript_entries(self.transcript_path, on_skip=self._count_skip)
        try:
            yield from entries
        except OSError as e:
            logger.warning(f"トランスクリプト読み込み失敗: {self.transcript_path} ({e})")
            self.unreadable = True

    def _count_skip(self) -> None:
        self.skipped_lines += 1


def iter_transcript_entries(
    transcript_path: Optional[Union[str, Path]],
    on_skip=None,
) -> Iterator[Tuple[int, Dict[str, Any]]]:
    """.jsonlを1行ずつパースして (行番号, エントリ) を返す

    空行・JSON不正行・オブジェクト以外の行はスキップ（on_skipで通知）。

    Raises:
        OSError: ファイルが存在しない・読めない場合（最初のnext()時点）
    """
    if not transcript_path:
        raise FileNotFoundError("transcript_path is empty")

    path = Path(transcript_path).expanduser()
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for line_number, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                if on_skip is not None:
                    on_skip()
                continue
            if not isinstance(entry, dict):
                if on_skip is not None:
                    on_skip()
                continue
            yield line_number, entry


def scan(
    transcript_path: Optional[Union[str, Path]],
    agent_id: Optional[str] = None,
    tool_use_id: Optional[str] = None,
) -> TranscriptScan:
    """トランスクリプトから対象サブエージェントのレコード列を得る

    Args:
        transcript_path: .jsonlファイルパス
        agent_id: 対象サブエージェントのagent_id
        tool_use_id: 対象サブエージェントを起動したtool_useのid

    Returns:
        遅延評価のTranscriptScan
    """
    return TranscriptScan(transcript_path, agent_id=agent_id, tool_use_id=tool_use_id)


# === 起動tool_useの特定 ===

def find_spawn_candidates(
    entries: Iterable[Tuple[int, Dict[str, Any]]],
    agent_id: str,
    agent_type: Optional[str] = None,
) -> List[SpawnMatch]:
    """親トランスクリプトからサブエージェント起動tool_useの候補を求める

    アルゴリズム:
    1. Task/Agent tool_useを起動候補として収集（prompt, subagent_type）
    2. agent_progress（data.agentId一致）のparentToolUseID、または
       toolUseResult.agentId一致のtool_resultから起動tool_useを確定（linked）
    3. linkedがあれば先頭に置き、続けて未完了（tool_result未着）かつ
       subagent_typeが一致する候補を古い順に並べる（nearest）

    Args:
        entries: (行番号, エントリ) の列
        agent_id: サブエージェントのagent_id
        agent_type: サブエージェントタイプ（Noneなら種別で絞らない）

    Returns:
        SpawnMatchのリスト（優先度順）
    """
    spawns: Dict[str, Tuple[str, str, int]] = {}
    completed: Set[str] = set()
    linked_id: Optional[str] = None

    for index, entry in entries:
        entry_type = entry.get("type")

        if entry_type == "progress":
            data = entry.get("data")
            if (
                isinstance(data, dict)
                and data.get("type") == "agent_progress"
                and data.get("agentId") == agent_id
                and isinstance(entry.get("parentToolUseID"), str)
            ):
                linked_id = linked_id or entry["parentToolUseID"]
            continue

        blocks = _content_blocks(entry.get("message"))
        if entry_type == "assistant":
            for block in blocks:
                if block.get("type") != "tool_use" or block.get("name") not in SUBAGENT_TOOL_NAMES:
                    continue
                tool_use_id = block.get("id")
                if not isinstance(tool_use_id, str):
                    continue
                tool_input = block.get("input") if isinstance(block.get("input"), dict) else {}
                prompt = tool_input.get("prompt")
                subagent_type = tool_input.get("subagent_type") or DEFAULT_SUBAGENT_TYPE
                spawns[tool_use_id] = (
                    prompt if isinstance(prompt, str) else "",
                    str(subagent_type),
                    index,
                )
        elif entry_type == "user":
            results = [block for block in blocks if block.get("type") == "tool_result"]
            for block in results:
                if isinstance(block.get("tool_use_id"), str):
                    completed.add(block["tool_use_id"])
            tool_use_result = entry.get("toolUseResult")
            if (
                len(results) == 1
                and isinstance(tool_use_result, dict)
                and tool_use_result.get("agentId") == agent_id
                and isinstance(results[0].get("tool_use_id"), str)
            ):
                linked_id = linked_id or results[0]["tool_use_id"]

    candidates: List[SpawnMatch] = []
    if linked_id and linked_id in spawns:
        prompt, subagent_type, index = spawns[linked_id]
        candidates.append(SpawnMatch(linked_id, prompt, subagent_type, index, "linked"))

    for tool_use_id, (prompt, subagent_type, index) in spawns.items():
        if tool_use_id == linked_id or tool_use_id in completed:
            continue
        if agent_type and subagent_type != agent_type:
            continue
        candidates.append(SpawnMatch(tool_use_id, prompt, subagent_type, index, "nearest"))
    return candidates


def read_spawn_candidates(
    transcript_path: Optional[Union[str, Path]],
    agent_id: str,
    agent_type: Optional[str] = None,
) -> List[SpawnMatch]:
    """親トランスクリプトファイルを読んで起動候補を求める（読めなければ空）"""
    try:
        return find_spawn_candidates(
            iter_transcript_entries(transcript_path), agent_id, agent_type
        )
    except OSError as e:
        logger.warning(f"親トランスクリプト読み込み失敗: {transcript_path} ({e})")
        return []
