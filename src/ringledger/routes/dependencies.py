"""Shared route dependencies.

Ledger services are built once in the application lifespan and kept on
``app.state``; routes receive them through these dependencies.
"""

import hmac
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ringledger.config import settings
from ringledger.database import get_db
from ringledger.services.call_recorder import CallRecorder
from ringledger.services.metering import MeteringReporter
from ringledger.services.subscription_sync import SubscriptionSync

# Shared database session dependency type alias
DbSession = Annotated[AsyncSession, Depends(get_db)]


def _from_state(request: Request, name: str) -> object:
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return service


def get_call_recorder(request: Request) -> CallRecorder:
    return _from_state(request, "call_recorder")  # type: ignore[return-value]


def get_metering_reporter(request: Request) -> MeteringReporter:
    return _from_state(request, "metering_reporter")  # type: ignore[return-value]


def get_subscription_sync(request: Request) -> SubscriptionSync:
    return _from_state(request, "subscription_sync")  # type: ignore[return-value]


def require_cron_secret(authorization: Annotated[str | None, Header()] = None) -> None:
    """Scheduled jobs authenticate with ``Authorization: Bearer <CRON_SECRET>``.

    Raises:
        HTTPException: 503 when no secret is configured, 401 when it does not match.
    """
    if not settings.CRON_SECRET:
        raise HTTPException(status_code=503, detail="Cron not configured")
    expected = f"Bearer {settings.CRON_SECRET}"
    if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


CallRecorderDep = Annotated[CallRecorder, Depends(get_call_recorder)]
MeteringReporterDep = Annotated[MeteringReporter, Depends(get_metering_reporter)]
SubscriptionSyncDep = Annotated[SubscriptionSync, Depends(get_subscription_sync)]
