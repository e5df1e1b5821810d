from __future__ import annotations

import argparse
import asyncio
import sys

from flockcast.core.logging import configure_logging
from flockcast.services.provisioning import ProvisioningService


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Provision an isolated database for an organization")
    parser.add_argument("--organization", required=True, help="Organization identifier")
    parser.add_argument("--name", required=True, help="Display name")
    parser.add_argument("--email", default=None, help="Contact email")
    parser.add_argument("--plan", default="trial", help="trial|starter|growth|pro")
    parser.add_argument("--sender-phone", default=None, help="E.164 sender number")
    return parser


async def _provision(args: argparse.Namespace) -> int:
    service = ProvisioningService()
    record = await service.provision(
        args.organization,
        name=args.name,
        email=args.email,
        plan=args.plan,
        sender_phone_number=args.sender_phone,
    )
    print("Tenant provisioned:")
    print(f"  tenant_id: {record.id}")
    print(f"  database: {record.database_name} on {record.host}:{record.port}")
    print(f"  schema_version: {record.schema_version}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_provision(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"provision_tenant failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
