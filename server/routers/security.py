"""Security dashboard routes (admin only)."""

from fastapi import APIRouter, Depends

from core.container import container
from middleware.auth import require_admin
from services.security import SecurityMonitor

router = APIRouter(prefix="/api/security", tags=["security"])


def get_security_monitor() -> SecurityMonitor:
    return container.security_monitor()


@router.get("/stats")
async def get_security_stats(
    admin: dict = Depends(require_admin),
    security: SecurityMonitor = Depends(get_security_monitor)
):
    """Alert counts for the last 7 days."""
    return {"success": True, "stats": await security.get_security_stats()}


@router.post("/alerts/{alert_id}/resolve")
async def resolve_alert(
    alert_id: str,
    admin: dict = Depends(require_admin),
    security: SecurityMonitor = Depends(get_security_monitor)
):
    alert = await security.resolve_security_alert(alert_id, admin.get("full_name") or admin["id"])
    return {"success": True, "alert": alert}
