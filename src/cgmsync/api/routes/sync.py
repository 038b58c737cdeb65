"""Sync trigger, status and connection routes."""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlmodel import Session, select

from cgmsync.api.auth import AuthContext, ServiceRole, get_auth_context, require_access
from cgmsync.config import Settings, get_settings
from cgmsync.db.engine import get_engine, get_session
from cgmsync.dexcom.sync_service import DexcomSyncService, SyncResult
from cgmsync.models.credential import SyncCredential, SyncSettings
from cgmsync.models.sync import SyncLogEntry

router = APIRouter()


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SyncRequest(_CamelModel):
    user_id: str = Field(min_length=1)


class SyncResults(_CamelModel):
    sensors_processed: int
    devices_processed: int
    glucose_readings: int
    new_sensors: int
    updated_sensors: int
    errors: List[str]


class SyncResponse(_CamelModel):
    success: bool
    message: Optional[str] = None
    sync_results: Optional[SyncResults] = None


class SyncStatusResponse(_CamelModel):
    status: str
    last_run_at: Optional[datetime] = None
    sync_type: Optional[str] = None
    records_processed: Optional[int] = None
    error_message: Optional[str] = None
    last_successful_sync: Optional[datetime] = None
    last_sync_error: Optional[str] = None


class ConnectionResponse(_CamelModel):
    connected: bool
    message: Optional[str] = None
    last_sync: Optional[datetime] = None
    token_expiry: Optional[datetime] = None
    is_expired: Optional[bool] = None


def get_sync_service(settings: Settings = Depends(get_settings)) -> DexcomSyncService:
    """Build the sync service from settings. Overridden in tests."""
    from cgmsync.scheduler.jobs import build_sync_service

    return build_sync_service(get_engine(), settings)


def _to_results(result: SyncResult) -> SyncResults:
    return SyncResults(
        sensors_processed=result.sensors_processed,
        devices_processed=result.devices_processed,
        glucose_readings=result.glucose_readings,
        new_sensors=result.new_sensors,
        updated_sensors=result.updated_sensors,
        errors=result.errors,
    )


@router.post("", response_model=SyncResponse, response_model_exclude_none=True)
async def trigger_sync(
    request: SyncRequest,
    auth: AuthContext = Depends(get_auth_context),
    service: DexcomSyncService = Depends(get_sync_service),
):
    """
    Run an incremental Dexcom sync for one user and wait for it.

    Partial success (item or vendor errors) is still a 200; the errors are
    listed in syncResults. Credential problems answer 400/401 before any
    data is written.
    """
    require_access(auth, request.user_id)
    sync_type = "scheduled" if isinstance(auth, ServiceRole) else "manual"

    result = await service.sync_user(request.user_id, sync_type=sync_type)

    message = (
        "Dexcom sync completed successfully"
        if result.status == "success"
        else f"Dexcom sync completed with {len(result.errors)} error(s)"
    )
    return SyncResponse(success=True, message=message, sync_results=_to_results(result))


@router.get("/status", response_model=SyncStatusResponse)
def sync_status(
    user_id: str = Query(alias="userId"),
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_session),
):
    """Return the most recent sync run and last outcome for a user."""
    require_access(auth, user_id)
    log = session.exec(
        select(SyncLogEntry)
        .where(SyncLogEntry.user_id == user_id)
        .order_by(SyncLogEntry.created_at.desc(), SyncLogEntry.id.desc())
    ).first()
    settings = session.exec(
        select(SyncSettings).where(SyncSettings.user_id == user_id)
    ).first()

    response = SyncStatusResponse(status="never_run")
    if log:
        response = SyncStatusResponse(
            status=log.status,
            last_run_at=log.created_at,
            sync_type=log.sync_type,
            records_processed=log.records_processed,
            error_message=log.error_message,
        )
    if settings:
        response.last_successful_sync = settings.last_successful_sync
        response.last_sync_error = settings.last_sync_error
    return response


@router.get("/connection", response_model=ConnectionResponse, response_model_exclude_none=True)
def connection_status(
    user_id: str = Query(alias="userId"),
    auth: AuthContext = Depends(get_auth_context),
    session: Session = Depends(get_session),
):
    """Report whether the stored credential looks usable. No vendor call."""
    require_access(auth, user_id)
    credential = session.exec(
        select(SyncCredential).where(
            SyncCredential.user_id == user_id,
            SyncCredential.is_active == True,  # noqa: E712
        )
    ).first()
    if credential is None:
        return ConnectionResponse(connected=False, message="No active Dexcom connection found")

    is_expired = credential.expires_at <= datetime.utcnow()
    return ConnectionResponse(
        connected=not is_expired,
        last_sync=credential.last_sync_at,
        token_expiry=credential.expires_at,
        is_expired=is_expired,
    )
