from fastapi import APIRouter, Depends
from typing import Optional, Dict, Any

from postpilot.deps import require_cron_secret
from postpilot.errors import api_error
from postpilot.services import scheduler

router = APIRouter(prefix="/scheduler", tags=["scheduler"], dependencies=[Depends(require_cron_secret)])


@router.post("/start")
def start(publish_cron: Optional[str] = None, analytics_cron: Optional[str] = None) -> Dict[str, Any]:
    # standard 5-field cron: m h dom mon dow, evaluated in UTC
    try:
        started = scheduler.start_scheduler(publish_cron, analytics_cron)
    except ValueError as e:
        raise api_error(400, f"Invalid cron expression: {e}")
    if not started:
        return {"status": "already-running"}
    return {"status": "started", **scheduler.scheduler_status()}

@router.post("/stop")
def stop() -> Dict[str, Any]:
    if scheduler.stop_scheduler():
        return {"status": "stopped"}
    return {"status": "not-running"}

@router.get("/status")
def status() -> Dict[str, Any]:
    return scheduler.scheduler_status()
