#!/usr/bin/env python3
"""subagent-ledger CLI エントリーポイント"""

import argparse
import sys


def _non_negative_int(value):
    """0以上の整数のみ受け付けるargparse型"""
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"整数を指定してください: {value}")
    if number < 0:
        raise argparse.ArgumentTypeError(f"0以上を指定してください: {value}")
    return number


def main(argv=None):
    """メインエントリーポイント"""
    parser = argparse.ArgumentParser(
        prog="subagent-ledger",
        description="サブエージェントのファイル操作記録 - フック管理CLI"
    )
    parser.add_argument(
        "--version", action="store_true", help="バージョン表示"
    )

    subparsers = parser.add_subparsers(dest="command", help="サブコマンド")

    # install-hooks サブコマンド
    install_parser = subparsers.add_parser(
        "install-hooks",
        help="SubagentStart/SubagentStopフック設定をインストール"
    )
    install_parser.add_argument(
        "--force", "-f", action="store_true",
        help="既存ファイルを上書き"
    )
    install_parser.add_argument(
        "--dry-run", action="store_true",
        help="実行内容を表示するのみ（実際には変更しない）"
    )

    # diagnose サブコマンド
    subparsers.add_parser(
        "diagnose",
        help="環境診断・設定・ストア状態の確認"
    )

    # prune サブコマンド
    prune_parser = subparsers.add_parser(
        "prune",
        help="SubagentStopが来なかった古い開始コンテキストを削除"
    )
    prune_parser.add_argument(
        "--older-than-minutes", type=_non_negative_int, default=None,
        help="削除対象の経過時間（分、デフォルト: 設定値 stale_context_minutes）"
    )
    prune_parser.add_argument(
        "--dry-run", action="store_true",
        help="削除対象を表示するのみ"
    )

    args = parser.parse_args(argv)

    if args.version:
        from shared.version import __version__
        print(f"subagent-ledger v{__version__}")
        return 0

    if args.command == "install-hooks":
        from application.install_hooks import InstallHooksCommand
        cmd = InstallHooksCommand(
            force=args.force,
            dry_run=args.dry_run
        )
        return cmd.execute()

    if args.command == "diagnose":
        from application.diagnose import DiagnoseCommand
        cmd = DiagnoseCommand()
        return cmd.execute()

    if args.command == "prune":
        from application.prune import PruneCommand
        cmd = PruneCommand(
            older_than_minutes=args.older_than_minutes,
            dry_run=args.dry_run
        )
        return cmd.execute()

    # コマンド未指定時はヘルプ表示
    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
