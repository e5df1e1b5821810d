from __future__ import annotations

import argparse
import asyncio
import json
import sys

from flockcast.core.logging import configure_logging
from flockcast.services.delivery import dead_letters as dead_letter_service
from flockcast.services.delivery.queue import enqueue_delivery_job


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspect and act on dead-lettered deliveries")
    sub = parser.add_subparsers(dest="command", required=True)

    list_cmd = sub.add_parser("list", help="List dead letters")
    list_cmd.add_argument("--status", default="pending", choices=dead_letter_service.DEAD_LETTER_STATUSES)
    list_cmd.add_argument("--tenant", default=None)
    list_cmd.add_argument("--limit", type=int, default=20)

    replay_cmd = sub.add_parser("replay", help="Re-enqueue a dead letter with a fresh attempt budget")
    replay_cmd.add_argument("id")

    resolve_cmd = sub.add_parser("resolve", help="Close a dead letter without replaying it")
    resolve_cmd.add_argument("id")
    resolve_cmd.add_argument("--dead", action="store_true", help="Mark as given up instead of resolved")
    resolve_cmd.add_argument("--note", default=None)
    return parser


async def _run(args: argparse.Namespace) -> int:
    if args.command == "list":
        items, total = await dead_letter_service.list_dead_letters(
            status=args.status,
            tenant_id=args.tenant,
            limit=args.limit,
        )
        print(f"{total} dead letter(s) with status {args.status}")
        for item in items:
            print(f"  {item['id']} tenant={item['tenant_id']} job={item['external_id']} error={item['error_message']}")
        return 0
    if args.command == "replay":
        item = await dead_letter_service.replay_dead_letter(args.id, enqueue=enqueue_delivery_job)
    else:
        item = await dead_letter_service.resolve_dead_letter(
            args.id,
            status="dead" if args.dead else "resolved",
            note=args.note,
        )
    print(json.dumps(item, indent=2, default=str))
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface operator errors clearly
        print(f"dead_letters failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
