from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from publishgate.core.config import get_settings
from publishgate.core.logging import configure_logging
from publishgate.persistence.db import SessionLocal
from publishgate.persistence.repos import account_access as access_repo
from publishgate.providers.crm.factory import get_crm_provider
from publishgate.services.authz.account_access import sync_all_crm_reports


logger = logging.getLogger("publishgate.scripts.sync_crm_reports")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Refresh cached CRM report memberships")
    parser.add_argument("--tenant", default=None, help="Only sync this tenant; defaults to every tenant with CRM grants")
    parser.add_argument(
        "--stale-only",
        action="store_true",
        help="Skip grants synced within CRM_SYNC_STALE_AFTER_HOURS",
    )
    return parser


async def _sync(args: argparse.Namespace) -> int:
    client = get_crm_provider()
    failed = 0
    async with SessionLocal() as session:
        tenants = [args.tenant] if args.tenant else await access_repo.list_tenants_with_crm_grants(session)
        for tenant_id in tenants:
            summary = await sync_all_crm_reports(
                session, tenant_id=tenant_id, crm_client=client, stale_only=args.stale_only
            )
            failed += len(summary.failed)
            print(
                f"tenant={tenant_id} attempted={summary.attempted} "
                f"succeeded={len(summary.succeeded)} failed={len(summary.failed)}"
            )
            for failure in summary.failed:
                # Missing reports are left for an admin to revoke.
                print(
                    f"  grant_id={failure.grant_id} error_code={failure.error_code} "
                    f"report_missing={failure.report_missing}"
                )
    return 1 if failed else 0


def main() -> int:
    configure_logging(get_settings().log_level)
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_sync(args))
    except Exception as exc:  # noqa: BLE001 - report job failures with a non-zero exit
        logger.exception("crm_sync_job_failed")
        print(f"sync_crm_reports failed: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
