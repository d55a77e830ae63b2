"""
spackl-sync コマンドラインインターフェース
"""

import argparse
import asyncio
import json
import sys
from typing import Iterable, Optional

from .app import SyncServices, build_services
from .config.settings import ConfigManager
from .core.context import SessionContext
from .core.errors import SyncError
from .core.models import SyncStatus, to_iso
from .layers.sharing_layer import ShareCheckStatus
from .utils.enhanced_logger import setup_logging


def _context(args) -> SessionContext:
    return SessionContext(
        user_id=args.user,
        display_name=getattr(args, "name", None),
        phone_number=getattr(args, "phone", None),
    )


async def cmd_sync(services: SyncServices, args) -> int:
    report = await services.engine.run(_context(args))
    print(report.summary())
    for error in report.errors:
        print(f"  - {error}")
    return 0 if report.status != SyncStatus.FAILED else 1


async def cmd_share(services: SyncServices, args) -> int:
    listing = await services.store.list_events(SessionContext(user_id=args.sharer))
    if listing.from_cache:
        print(f"(キャッシュ {listing.bucket} のデータを使用)")

    result = await services.registry.share(
        args.sharer,
        args.to,
        listing.events,
        device_info={"client": "spackl-sync-cli"},
        sharer_name=args.name,
        recipient_name=args.recipient_name,
    )
    state = "作成" if result.created else "更新"
    print(f"共有を{state}しました: {result.grant.recipient_key} ({len(result.grant.events_snapshot)}件)")
    if result.invite_sent:
        print("招待SMSを送信しました")
    for warning in result.warnings:
        print(f"  警告: {warning}")
    return 0


async def cmd_unshare(services: SyncServices, args) -> int:
    await services.registry.unshare(args.sharer, args.to)
    print("共有を解除しました")
    return 0


async def cmd_status(services: SyncServices, args) -> int:
    if args.wait:
        result = await services.registry.check_status_until_settled(args.to, args.sharer)
    else:
        result = await services.registry.check_status(args.to, args.sharer)

    print(f"{result.recipient_key}: {result.status.value}")
    for grant in result.grants:
        print(f"  {grant.sharer_id}: {grant.status.value} (更新 {to_iso(grant.last_updated)})")
    if result.error:
        print(f"  エラー: {result.error}")
    return 0 if result.status in (ShareCheckStatus.SHARED, ShareCheckStatus.NOT_SHARED) else 1


async def cmd_invitations(services: SyncServices, args) -> int:
    if args.event and args.set_status:
        record = await services.router.update_status(args.identifier, args.event, args.set_status)
        print(f"{record.title}: {record.status.value}")
        return 0

    records = await services.router.list_invitations(args.identifier)
    if not records:
        print("招待はありません")
    for record in records:
        print(f"{to_iso(record.start_time)}  {record.title}  [{record.status.value}]  "
              f"from {record.organizer_name or record.organizer_id}  ({record.event_id})")
    return 0


async def cmd_cache(services: SyncServices, args) -> int:
    if args.cleanup is not None:
        deleted = await services.cache.cleanup(args.cleanup)
        print(f"{deleted}件のスナップショットを削除しました")
        return 0

    snapshot = await services.cache.load_snapshot(args.user, args.bucket)
    if snapshot is None:
        print("キャッシュはありません")
        return 1

    print(f"バケット {snapshot.bucket} (保存 {to_iso(snapshot.cached_at)}): {len(snapshot.events)}件")
    if args.json:
        print(json.dumps([e.to_document() for e in snapshot.events], ensure_ascii=False, indent=2))
    else:
        for event in snapshot.events:
            print(f"  {to_iso(event.start_time)}  {event.title}")
    return 0


COMMANDS = {
    "sync": cmd_sync,
    "share": cmd_share,
    "unshare": cmd_unshare,
    "status": cmd_status,
    "invitations": cmd_invitations,
    "cache": cmd_cache,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="spackl-sync", description="Spackl calendar sync")
    parser.add_argument("--config-dir", default="config", help="設定ディレクトリ")
    parser.add_argument("--init-config", action="store_true", help="設定テンプレートを作成")
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("sync", help="同期パスを実行")
    p.add_argument("--user", required=True, help="ユーザーID")
    p.add_argument("--name", help="表示名（招待の主催者名）")

    p = sub.add_parser("share", help="カレンダーを共有")
    p.add_argument("--from", dest="sharer", required=True, help="共有者のユーザーID")
    p.add_argument("--to", required=True, help="共有先の電話番号")
    p.add_argument("--name", help="共有者の表示名")
    p.add_argument("--recipient-name", help="共有先の名前（招待SMS用）")

    p = sub.add_parser("unshare", help="共有を解除")
    p.add_argument("--from", dest="sharer", required=True, help="共有者のユーザーID")
    p.add_argument("--to", required=True, help="共有先の電話番号")

    p = sub.add_parser("status", help="共有状態を確認")
    p.add_argument("--to", required=True, help="共有先の電話番号")
    p.add_argument("--from", dest="sharer", help="共有者のユーザーID")
    p.add_argument("--wait", action="store_true", help="通信エラー時にリトライ予算まで再試行")

    p = sub.add_parser("invitations", help="招待の一覧・出欠更新")
    p.add_argument("identifier", help="電話番号またはメールアドレス")
    p.add_argument("--event", help="出欠を更新するイベントID")
    p.add_argument("--set-status", choices=["pending", "going", "interested", "not_interested",
                                              "accepted", "declined"],
                   help="新しい出欠ステータス")

    p = sub.add_parser("cache", help="オフラインキャッシュの表示・整理")
    p.add_argument("--user", help="ユーザーID")
    p.add_argument("--bucket", help="YYYY-MM（未指定時は最新）")
    p.add_argument("--json", action="store_true", help="JSONで出力")
    p.add_argument("--cleanup", type=int, metavar="N", help="ユーザーごとに新しいN個を残して削除")

    return parser


async def _run(args) -> int:
    manager = ConfigManager(args.config_dir)
    if args.init_config:
        created = manager.save_config_template()
        print(f"設定テンプレートを作成しました: {', '.join(created) or 'なし'}")
        if not args.command:
            return 0

    config = manager.load_config()
    enhanced = setup_logging({
        "level": config.logging.level,
        "file_path": config.logging.file_path,
        "json_output": config.logging.json_output,
        "metrics_enabled": config.logging.metrics_enabled,
    })

    op_context = enhanced.log_operation_start(f"cli_{args.command}")
    exit_code = 1
    try:
        services = build_services(config, manager.load_secrets())
        await services.initialize()
        exit_code = await COMMANDS[args.command](services, args)
        return exit_code
    finally:
        enhanced.log_operation_end(op_context, success=exit_code == 0)


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if not args.command and not args.init_config:
        parser.print_help()
        return 2
    if args.command == "cache" and args.cleanup is None and not args.user:
        raise SystemExit("cache の表示には --user が必要です")
    if args.command == "invitations" and bool(args.event) != bool(args.set_status):
        raise SystemExit("--event と --set-status は同時に指定してください")

    try:
        return asyncio.run(_run(args))
    except SyncError as e:
        print(f"エラー: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
