"""Monitoring API routes for health checks and metrics"""
from fastapi import APIRouter, Depends, Query, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.orm import Session

from renewal_engine.core.metrics import pending_retries_gauge
from renewal_engine.core.security import require_admin
from renewal_engine.db.helpers import count_pending_retries
from renewal_engine.db.session import get_db
from renewal_engine.services.monitoring_service import health_metrics

router = APIRouter(tags=["monitoring"])


@router.get("/metrics")
def metrics_endpoint(db: Session = Depends(get_db)):
    """Prometheus metrics endpoint - updates gauges before export"""
    pending_retries_gauge.set(count_pending_retries(db))
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}


@router.get("/api/admin/health", dependencies=[Depends(require_admin)])
def renewal_health(days: int = Query(30, ge=1, le=365), db: Session = Depends(get_db)):
    """Renewal success rates, suspensions and backlog"""
    return health_metrics(db, days=days)
