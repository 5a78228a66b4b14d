"""Scheduled job endpoints, called by an external scheduler."""

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query

from ringledger.routes.dependencies import DbSession, MeteringReporterDep, require_cron_secret
from ringledger.services.trial import expire_trials
from ringledger.services.usage import billing_period

logger = structlog.get_logger()

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])


@router.post("/expire-trials")
async def cron_expire_trials(db: DbSession) -> dict[str, Any]:
    """Suspend businesses whose trial ended without a subscription."""
    expired = await expire_trials(db)
    return {"success": True, "expired": expired}


@router.post("/reconcile-metering")
async def cron_reconcile_metering(
    db: DbSession,
    reporter: MeteringReporterDep,
    period: str | None = Query(default=None, pattern=r"^\d{4}-\d{2}$"),
) -> dict[str, Any]:
    """Report overage that failed to reach the billing provider earlier."""
    period = period or billing_period()
    if not reporter.enabled:
        logger.info("Metering disabled, skipping reconciliation", billing_period=period)
    counts = await reporter.reconcile_period(db, period)
    return {"success": True, "billing_period": period, "outcomes": counts}
