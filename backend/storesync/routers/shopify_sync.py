"""Shopify synchronization endpoints.

WHAT:
    Thin HTTP wrappers around ShopifyService: trigger syncs, read run history
    and metrics, inspect/reset the circuit breaker and preview conflicts.

WHY:
    - Routers handle request parsing and error mapping only
    - Business logic stays in ShopifyService so schedulers can reuse it

ERROR MAPPING:
    CircuitOpenError -> 503 (Shopify calls suspended)
    ShopifyAPIError  -> 502 (Shopify rejected the setup call)
    LookupError      -> 404
    ValueError       -> 400

REFERENCES:
    - storesync/services/shopify_sync_service.py
"""

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from storesync.deps import get_shopify_service
from storesync.services.resilience import CircuitOpenError
from storesync.services.shopify_client import ShopifyAPIError
from storesync.services.shopify_sync_service import ShopifyService

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class SyncResultResponse(BaseModel):
    """Counts and per-record errors of one sync run."""

    sync_id: str
    entity_type: str
    direction: str
    success: bool = Field(description="True when no record failed")
    successful: int = 0
    failed: int = 0
    total: int = 0
    errors: List[str] = Field(default_factory=list)


class FullSyncResponse(BaseModel):
    success: bool
    started_at: datetime
    completed_at: datetime
    results: Dict[str, Dict[str, Any]] = Field(
        description="Per entity: a sync result, or {success: false, error} if the run failed to start"
    )


class SyncRunResponse(BaseModel):
    id: str
    entity_type: str
    direction: str
    status: str
    successful: int = 0
    failed: int = 0
    total: int = 0
    errors: Optional[List[str]] = None
    error_message: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None
    started_at: datetime
    completed_at: Optional[datetime] = None


class SyncMetricsResponse(BaseModel):
    entity_type: Optional[str] = None
    days: int
    total_syncs: int
    successful_syncs: int
    failed_syncs: int
    success_rate: float = Field(description="Percentage of finished runs that completed")
    average_duration: float = Field(description="Seconds")
    records_processed: int


class ConflictPreviewRequest(BaseModel):
    """Local snapshot and Shopify payload to compare without writing anything."""

    entity_type: Literal["product", "customer"]
    local: Dict[str, Any]
    remote: Dict[str, Any]


# =============================================================================
# Router setup
# =============================================================================

router = APIRouter(prefix="/shopify", tags=["Shopify Sync"])


async def _guarded(operation: Callable[[], Awaitable[T]]) -> T:
    """Run a service call, translating sync errors into HTTP errors."""
    try:
        return await operation()
    except CircuitOpenError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except ShopifyAPIError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    except LookupError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


# =============================================================================
# Status & history
# =============================================================================

@router.get("/sync/status")
def get_sync_status(service: ShopifyService = Depends(get_shopify_service)) -> Dict[str, Any]:
    """Active runs, recent runs, last completed run per entity and channel health."""
    return service.get_sync_status()


@router.get("/sync/history", response_model=List[SyncRunResponse])
def get_sync_history(
    entity_type: Optional[str] = Query(default=None, description="products, inventory, orders or customers"),
    limit: int = Query(default=50, ge=1, le=500),
    service: ShopifyService = Depends(get_shopify_service),
) -> List[Dict[str, Any]]:
    return service.get_sync_history(entity_type=entity_type, limit=limit)


@router.get("/sync/metrics", response_model=SyncMetricsResponse)
def get_sync_metrics(
    entity_type: Optional[str] = Query(default=None),
    days: int = Query(default=7, ge=1, le=365),
    service: ShopifyService = Depends(get_shopify_service),
) -> Dict[str, Any]:
    return service.get_sync_metrics(entity_type=entity_type, days=days)


# =============================================================================
# Sync triggers
# =============================================================================

@router.post("/sync/full", response_model=FullSyncResponse)
async def trigger_full_sync(service: ShopifyService = Depends(get_shopify_service)) -> Dict[str, Any]:
    """Products pull, inventory push, orders import and customers pull, concurrently."""
    logger.info("[SHOPIFY_SYNC] HTTP full sync requested")
    return await _guarded(service.trigger_full_sync)


@router.post("/sync/products/push", response_model=SyncResultResponse)
async def push_products(service: ShopifyService = Depends(get_shopify_service)) -> Dict[str, Any]:
    result = await _guarded(service.sync_products_to_shopify)
    return result.to_dict()


@router.post("/sync/products/pull", response_model=SyncResultResponse)
async def pull_products(service: ShopifyService = Depends(get_shopify_service)) -> Dict[str, Any]:
    result = await _guarded(service.sync_products_from_shopify)
    return result.to_dict()


@router.post("/sync/inventory/push", response_model=SyncResultResponse)
async def push_inventory(service: ShopifyService = Depends(get_shopify_service)) -> Dict[str, Any]:
    result = await _guarded(service.sync_inventory_to_shopify)
    return result.to_dict()


@router.post("/sync/orders/pull", response_model=SyncResultResponse)
async def import_orders(service: ShopifyService = Depends(get_shopify_service)) -> Dict[str, Any]:
    """Incremental: only orders updated since the last completed import."""
    result = await _guarded(service.import_orders_from_shopify)
    return result.to_dict()


@router.post("/sync/customers/pull", response_model=SyncResultResponse)
async def pull_customers(service: ShopifyService = Depends(get_shopify_service)) -> Dict[str, Any]:
    result = await _guarded(service.sync_customers_from_shopify)
    return result.to_dict()


@router.post("/sync/products/{product_id}", response_model=SyncResultResponse)
async def sync_single_product(
    product_id: str,
    service: ShopifyService = Depends(get_shopify_service),
) -> Dict[str, Any]:
    result = await _guarded(lambda: service.sync_single_product(product_id))
    return result.to_dict()


@router.post("/sync/customers/{customer_id}", response_model=SyncResultResponse)
async def sync_single_customer(
    customer_id: str,
    service: ShopifyService = Depends(get_shopify_service),
) -> Dict[str, Any]:
    result = await _guarded(lambda: service.sync_single_customer(customer_id))
    return result.to_dict()


# =============================================================================
# Channel health
# =============================================================================

@router.get("/circuit-breaker/status")
def get_circuit_breaker_status(service: ShopifyService = Depends(get_shopify_service)) -> Dict[str, Any]:
    return service.get_circuit_breaker_status()


@router.post("/circuit-breaker/reset")
def reset_circuit_breaker(service: ShopifyService = Depends(get_shopify_service)) -> Dict[str, Any]:
    logger.warning("[SHOPIFY_SYNC] Circuit breaker reset requested over HTTP")
    return service.reset_circuit_breaker()


@router.get("/rate-limit/status")
def get_rate_limit_status(service: ShopifyService = Depends(get_shopify_service)) -> Dict[str, Any]:
    return service.get_rate_limit_status()


# =============================================================================
# Configuration & conflicts
# =============================================================================

@router.get("/config")
def get_configuration(service: ShopifyService = Depends(get_shopify_service)) -> Dict[str, Any]:
    """Effective configuration, credentials masked."""
    return service.get_configuration()


@router.post("/config/test")
async def test_connection(service: ShopifyService = Depends(get_shopify_service)) -> Dict[str, Any]:
    return await service.test_connection()


@router.post("/conflicts/resolve")
def preview_conflict_resolution(
    body: ConflictPreviewRequest,
    service: ShopifyService = Depends(get_shopify_service),
) -> Dict[str, Any]:
    """Show what the resolver would decide for this pair. Nothing is written."""
    try:
        return service.preview_conflict_resolution(body.entity_type, body.local, body.remote)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
