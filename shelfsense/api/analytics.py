"""
Analytics endpoints

Knobs arrive as raw strings so that junk input falls back to defaults
instead of failing validation.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from shelfsense.api.deps import get_capabilities, get_db
from shelfsense.exceptions import ConfigurationError
from shelfsense.models.store import Store
from shelfsense.services.analytics_service import AnalyticsConfig, AnalyticsService
from shelfsense.utils.logger import log

router = APIRouter(prefix="/analytics", tags=["analytics"])


def _service(db: Session, capabilities) -> AnalyticsService:
    try:
        return AnalyticsService(db, capabilities=capabilities)
    except ConfigurationError as e:
        log.error(f"Analytics misconfigured: {e}")
        raise HTTPException(status_code=500, detail=str(e))


def _require_store(db: Session, store_id: str) -> None:
    if db.query(Store.id).filter(Store.store_id == store_id).first() is None:
        raise HTTPException(status_code=404, detail=f"Unknown store: {store_id}")


@router.get("")
async def get_analytics(
    store_id: str = Query(..., description="Shop domain"),
    windowDays: Optional[str] = Query(None),
    minStock: Optional[str] = Query(None),
    inactivityDays: Optional[str] = Query(None),
    discountPct: Optional[str] = Query(None),
    maxSalesInWindow: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    capabilities=Depends(get_capabilities),
):
    """Dashboard payload: metrics, top sellers, slow movers with price suggestions"""
    _require_store(db, store_id)
    cfg = AnalyticsConfig.from_params({
        "windowDays": windowDays,
        "minStock": minStock,
        "inactivityDays": inactivityDays,
        "discountPct": discountPct,
        "maxSalesInWindow": maxSalesInWindow,
    })
    return _service(db, capabilities).get_analytics(store_id, cfg)


@router.get("/top-sellers")
async def get_top_sellers(
    store_id: str = Query(..., description="Shop domain"),
    windowDays: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    capabilities=Depends(get_capabilities),
):
    """Top 10 variants by units sold in the window"""
    _require_store(db, store_id)
    cfg = AnalyticsConfig.from_params({"windowDays": windowDays})
    return {
        "store_id": store_id,
        "window_days": cfg.window_days,
        "top_sellers": _service(db, capabilities).top_sellers(store_id, cfg.window_days),
    }


@router.get("/recommendations")
async def get_recommendations(
    store_id: str = Query(..., description="Shop domain"),
    windowDays: Optional[str] = Query(None),
    minStock: Optional[str] = Query(None),
    inactivityDays: Optional[str] = Query(None),
    discountPct: Optional[str] = Query(None),
    maxSalesInWindow: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    capabilities=Depends(get_capabilities),
):
    """Price increases for popular stock, markdowns for slow movers, restock alerts"""
    _require_store(db, store_id)
    cfg = AnalyticsConfig.from_params({
        "windowDays": windowDays,
        "minStock": minStock,
        "inactivityDays": inactivityDays,
        "discountPct": discountPct,
        "maxSalesInWindow": maxSalesInWindow,
    })
    service = _service(db, capabilities)
    recs = service.recommendations(store_id, cfg)
    return {
        "store_id": store_id,
        "window_days": cfg.window_days,
        "recommendations": recs,
        "meta": {
            "generated": len(recs),
            "rule": service.rule_name,
            "knobs": cfg.knobs(),
        },
    }
