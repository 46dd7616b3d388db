"""Security alert query and resolution API."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query

from shopguard.api.auth import require_admin_key
from shopguard.monitor import get_monitor

logger = structlog.get_logger()

router = APIRouter(
    prefix="/_shopguard/alerts",
    tags=["alerts"],
    dependencies=[Depends(require_admin_key)],
)


@router.get("")
async def list_alerts(unresolved: bool = Query(False, description="Only unresolved alerts")):
    """List alerts raised by the security monitor, newest last."""
    alerts = get_monitor().get_alerts(unresolved_only=unresolved)
    return {"data": [a.to_dict() for a in alerts], "count": len(alerts)}


@router.post("/{alert_id}/resolve")
async def resolve_alert(alert_id: str):
    """Mark an alert as resolved."""
    alert = get_monitor().resolve_alert(alert_id)
    if alert is None:
        raise HTTPException(status_code=404, detail="Alert not found")
    logger.info("security_alert_resolved", alert_id=alert_id, alert_type=alert.type)
    return alert.to_dict()
