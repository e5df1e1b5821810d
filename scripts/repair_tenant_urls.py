from __future__ import annotations

import argparse
import asyncio
import sys

from flockcast.core.logging import configure_logging
from flockcast.services.provisioning import ProvisioningService


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Rebuild tenant connection URLs from stored coordinates")
    parser.add_argument("--tenant", default=None, help="Repair one tenant; all tenants when omitted")
    return parser


async def _repair(args: argparse.Namespace) -> int:
    service = ProvisioningService()
    if args.tenant:
        record = await service.repair_connection_url(args.tenant)
        print(f"{record.id}: {record.database_name} on {record.host}:{record.port}")
        return 0
    repaired = await service.repair_all_connection_urls()
    print(f"Repaired {len(repaired)} tenant connection URL(s)")
    for tenant_id in repaired:
        print(f"  {tenant_id}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_repair(args))
    except Exception as exc:  # noqa: BLE001 - surface repair failures clearly
        print(f"repair_tenant_urls failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
