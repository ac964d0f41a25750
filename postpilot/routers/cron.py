# postpilot/routers/cron.py
from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from postpilot.deps import get_db, require_cron_secret
from postpilot.services.scheduler import run_analytics_sweep, run_publish_sweep

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])


@router.post("/publish")
def publish_sweep(db: Session = Depends(get_db)) -> Dict[str, Any]:
    return run_publish_sweep(db)

@router.post("/analytics")
def analytics_sweep(db: Session = Depends(get_db)) -> Dict[str, Any]:
    return run_analytics_sweep(db)
