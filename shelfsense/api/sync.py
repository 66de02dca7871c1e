"""
Data synchronization endpoints
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from shelfsense.api.deps import get_client_factory, get_db
from shelfsense.config import get_settings
from shelfsense.exceptions import ConfigurationError
from shelfsense.services.store_adapter import StoreAdapter
from shelfsense.services.sync_engine import ENTITY_TYPES, SyncEngine, SyncOptions
from shelfsense.utils.logger import log

router = APIRouter(prefix="/sync", tags=["sync"])

# error kind -> HTTP status for a failed run
FAILURE_STATUS = {
    "upstream_rejected": 502,
    "transient_upstream": 503,
    "storage": 500,
}


@router.post("/{entity_type}")
async def sync_entity(
    entity_type: str,
    store_id: str = Query(..., description="Shop domain, e.g. mystore.myshopify.com"),
    dry: bool = Query(False, description="Fetch and flatten only; write nothing"),
    days: Optional[str] = Query(None, description="First-run lookback in days (clamped)"),
    page_cap: Optional[str] = Query(None, description="Max pages for this run"),
    db: Session = Depends(get_db),
    client_factory=Depends(get_client_factory),
):
    """
    Run one incremental sync for a store.

    Returns the sync report. A capped run is still a 200; check
    more_available and call again to continue from the saved cursor.
    """
    if entity_type not in ENTITY_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown entity type: {entity_type} (expected one of {', '.join(ENTITY_TYPES)})",
        )

    adapter = StoreAdapter(db)
    if adapter.get_store(store_id) is None:
        raise HTTPException(status_code=404, detail=f"Unknown store: {store_id}")

    engine = SyncEngine(adapter, client_factory=client_factory, settings=get_settings())
    try:
        report = await engine.run_sync(
            store_id,
            entity_type,
            SyncOptions(dry=dry, days=days, page_cap=page_cap),
        )
    except ConfigurationError as e:
        log.warning(f"Sync refused for {store_id}/{entity_type}: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    if report.ok:
        return report.to_dict()

    status_code = FAILURE_STATUS.get((report.error or {}).get("kind"), 500)
    return JSONResponse(status_code=status_code, content=report.to_dict())
