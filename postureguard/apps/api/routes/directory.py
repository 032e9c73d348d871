from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.apps.api.deps import get_actor_id, get_db, get_organization_id
from postureguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from postureguard.apps.api.response import success_response
from postureguard.domain.alerts import summarize_alert
from postureguard.domain.records import ensure_utc
from postureguard.persistence.repos import org_units as org_units_repo
from postureguard.persistence.repos import provider_configs as provider_configs_repo
from postureguard.persistence.repos import snapshots as snapshots_repo
from postureguard.services import credentials as credentials_service
from postureguard.services import exports as exports_service
from postureguard.services import scans as scans_service


router = APIRouter(prefix="/directory", tags=["directory"], responses=DEFAULT_ERROR_RESPONSES)


class ScanTriggerRequest(BaseModel):
    provider: str | None = None

    model_config = {"extra": "forbid"}


class ProviderConfigRequest(BaseModel):
    # Raw pasted JSON or an already-parsed object.
    credentials: str | dict[str, Any]
    admin_email: str | None = None
    domain: str | None = None
    is_enabled: bool = True
    scan_interval_hours: int | None = Field(default=None, ge=1, le=24 * 30)

    model_config = {"extra": "forbid"}


class OrgUnitAnnotationRequest(BaseModel):
    risk_tags: list[str] | None = None
    # Sending null explicitly clears the notes.
    risk_notes: str | None = Field(default=None, max_length=4000)

    model_config = {"extra": "forbid"}


def _org_unit_to_dict(unit) -> dict[str, Any]:
    return {
        "id": unit.id,
        "path": unit.path,
        "name": unit.name,
        "parent_path": unit.parent_path,
        "user_count": unit.user_count,
        "risk_tags": list(unit.risk_tags or []),
        "risk_notes": unit.risk_notes,
    }


def _alert_to_dict(alert) -> dict[str, Any]:
    start_time = ensure_utc(alert.start_time)
    return {
        "id": alert.external_id,
        "type": alert.alert_type,
        "title": alert.title,
        "source": alert.source,
        "severity": alert.severity,
        "status": alert.status,
        "start_time": start_time.isoformat() if start_time else None,
        "summary": [{"label": label, "text": text} for label, text in summarize_alert(alert.description)],
    }


@router.post("/scans", status_code=202)
async def trigger_scan(
    request: Request,
    payload: ScanTriggerRequest | None = None,
    organization_id: str = Depends(get_organization_id),
    actor: str | None = Depends(get_actor_id),
) -> dict:
    run = await scans_service.trigger_scan(organization_id, actor, payload.provider if payload else None)
    return success_response(request=request, data={"status": "started", "scan_run_id": run.id})


@router.get("/scans/status")
async def scan_status(
    request: Request,
    provider: str | None = None,
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    status = await scans_service.get_scan_status(db, organization_id, provider)
    return success_response(request=request, data=status)


@router.get("/scans/history")
async def scan_history(
    request: Request,
    provider: str | None = None,
    limit: int = Query(default=20, ge=1, le=100),
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    history = await scans_service.get_scan_history(db, organization_id, provider, limit=limit)
    return success_response(request=request, data=history)


@router.get("/compliance-checks")
async def compliance_checks(
    request: Request,
    provider: str | None = None,
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    latest = await scans_service.get_latest_compliance(db, organization_id, provider)
    return success_response(request=request, data=latest)


@router.get("/providers")
async def list_providers(
    request: Request,
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    configs = await provider_configs_repo.list_configs_for_organization(db, organization_id)
    return success_response(request=request, data=[credentials_service.config_to_dict(c) for c in configs])


@router.put("/providers/{provider}/config")
async def configure_provider(
    provider: str,
    request: Request,
    payload: ProviderConfigRequest,
    organization_id: str = Depends(get_organization_id),
    actor: str | None = Depends(get_actor_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    config = await credentials_service.configure_provider(
        db,
        organization_id=organization_id,
        provider=provider,
        credentials=payload.credentials,
        admin_email=payload.admin_email,
        domain=payload.domain,
        is_enabled=payload.is_enabled,
        scan_interval_hours=payload.scan_interval_hours,
        actor=actor,
    )
    await db.commit()
    return success_response(request=request, data=credentials_service.config_to_dict(config))


@router.patch("/org-units/{org_unit_id}/annotations")
async def annotate_org_unit(
    org_unit_id: int,
    request: Request,
    payload: OrgUnitAnnotationRequest,
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    clear_notes = "risk_notes" in payload.model_fields_set and payload.risk_notes is None
    unit = await org_units_repo.update_annotations(
        db,
        organization_id,
        org_unit_id,
        risk_tags=payload.risk_tags,
        risk_notes=payload.risk_notes,
        clear_notes=clear_notes,
    )
    if unit is None:
        # Use 404 to avoid leaking cross-organization existence.
        raise HTTPException(status_code=404, detail={"code": "ORG_UNIT_NOT_FOUND", "message": "Org unit not found"})
    await db.commit()
    return success_response(request=request, data=_org_unit_to_dict(unit))


@router.get("/alerts")
async def list_alerts(
    request: Request,
    provider: str | None = None,
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    config = await scans_service.resolve_config(db, organization_id, provider)
    alerts = await snapshots_repo.list_rows(db, "alerts", organization_id, config.provider)
    return success_response(request=request, data=[_alert_to_dict(alert) for alert in alerts if not alert.stale])


@router.get("/exports/{kind}")
async def export_collection(
    kind: str,
    provider: str | None = None,
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
) -> Response:
    if kind not in exports_service.EXPORT_KINDS:
        raise HTTPException(status_code=404, detail={"code": "EXPORT_NOT_FOUND", "message": f"Unknown export: {kind}"})
    config = await scans_service.resolve_config(db, organization_id, provider)
    filename, body = await exports_service.export_csv(db, organization_id, config.provider, kind)
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
