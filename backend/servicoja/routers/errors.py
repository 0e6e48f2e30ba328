from fastapi import HTTPException

from servicoja.services.marketplace_store import (
    MarketplaceStoreConflictError,
    MarketplaceStoreError,
    MarketplaceStoreNotFoundError,
    MarketplaceStorePermissionError,
)


def raise_store_http_error(exc: MarketplaceStoreError) -> None:
    if isinstance(exc, MarketplaceStoreNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, MarketplaceStorePermissionError):
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    if isinstance(exc, MarketplaceStoreConflictError):
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    raise HTTPException(status_code=400, detail=str(exc)) from exc
