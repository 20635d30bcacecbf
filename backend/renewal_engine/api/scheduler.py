"""Operator-triggered scheduler runs (cron alternative to the background loops)"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from renewal_engine.api.deps import get_services
from renewal_engine.core.security import require_admin
from renewal_engine.db.session import get_db
from renewal_engine.services.container import BillingServices

router = APIRouter(prefix="/api/scheduler", tags=["scheduler"], dependencies=[Depends(require_admin)])


@router.post("/tick")
def run_tick(db: Session = Depends(get_db), services: BillingServices = Depends(get_services)):
    """Run one renewal tick now"""
    return {"summary": services.scheduler.tick(db)}


@router.post("/retries")
def run_retries(db: Session = Depends(get_db), services: BillingServices = Depends(get_services)):
    """Fire every due payment retry now"""
    return {"summary": services.retry_engine.process_due_retries(db)}


@router.post("/delayed")
def run_delayed(db: Session = Depends(get_db), services: BillingServices = Depends(get_services)):
    """Run due grace-end tasks now"""
    return {"summary": services.grace.process_due_tasks(db)}
