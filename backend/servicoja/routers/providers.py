from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query

from servicoja.auth import assert_actor_authorized
from servicoja.models import (
    Category,
    Provider,
    ProviderCategoryRequest,
    ProviderCreateRequest,
    ProviderDetails,
    ProviderSummary,
    ProviderUpdateRequest,
    ReviewWithClient,
    Service,
)
from servicoja.routers.errors import raise_store_http_error
from servicoja.services.marketplace_store import MarketplaceStoreError, marketplace_store

router = APIRouter(prefix="/providers", tags=["providers"])


@router.get("", response_model=list[ProviderSummary])
def list_providers(
    category_id: Optional[str] = Query(default=None),
    city: Optional[str] = Query(default=None),
    min_rating: Optional[float] = Query(default=None),
    max_price: Optional[float] = Query(default=None),
    search: Optional[str] = Query(default=None),
    verified_only: bool = Query(default=False),
    sort_by: str = Query(default="rating"),
    limit: int = Query(default=50),
    offset: int = Query(default=0),
):
    try:
        return marketplace_store.list_providers(
            category_id=category_id,
            city=city,
            min_rating=min_rating,
            max_price=max_price,
            search=search,
            verified_only=verified_only,
            sort_by=sort_by,
            limit=limit,
            offset=offset,
        )
    except MarketplaceStoreError as exc:
        raise_store_http_error(exc)


@router.post("", response_model=Provider)
def create_provider(
    payload: ProviderCreateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.user_id, authorization=authorization)
    try:
        return marketplace_store.create_provider(
            user_id=payload.user_id,
            city=payload.city,
            description=payload.description,
            hourly_rate=payload.hourly_rate,
            whatsapp=payload.whatsapp,
            facebook=payload.facebook,
            category_ids=payload.category_ids,
        )
    except MarketplaceStoreError as exc:
        raise_store_http_error(exc)


@router.get("/by-user/{user_id}", response_model=Provider)
def get_provider_by_user(user_id: str):
    provider = marketplace_store.get_provider_by_user_id(user_id)
    if not provider:
        raise HTTPException(status_code=404, detail="Provider not found")
    return provider


@router.get("/{provider_id}", response_model=ProviderDetails)
def get_provider(provider_id: str):
    details = marketplace_store.get_provider_details(provider_id)
    if not details:
        raise HTTPException(status_code=404, detail="Provider not found")
    return details


@router.put("/{provider_id}", response_model=Provider)
def update_provider(
    provider_id: str,
    payload: ProviderUpdateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    updates = payload.model_dump(exclude_unset=True, exclude={"actor_user_id", "category_ids"})
    try:
        return marketplace_store.update_provider(
            provider_id,
            actor_user_id=payload.actor_user_id,
            updates=updates,
            category_ids=payload.category_ids,
        )
    except MarketplaceStoreError as exc:
        raise_store_http_error(exc)


@router.post("/{provider_id}/categories/{category_id}", response_model=list[Category])
def add_provider_category(
    provider_id: str,
    category_id: str,
    payload: ProviderCategoryRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        return marketplace_store.add_provider_category(
            provider_id,
            category_id,
            actor_user_id=payload.actor_user_id,
        )
    except MarketplaceStoreError as exc:
        raise_store_http_error(exc)


@router.delete("/{provider_id}/categories/{category_id}", response_model=list[Category])
def remove_provider_category(
    provider_id: str,
    category_id: str,
    actor_user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    try:
        return marketplace_store.remove_provider_category(
            provider_id,
            category_id,
            actor_user_id=actor_user_id,
        )
    except MarketplaceStoreError as exc:
        raise_store_http_error(exc)


@router.get("/{provider_id}/services", response_model=list[Service])
def list_provider_services(provider_id: str, active_only: bool = Query(default=False)):
    try:
        return marketplace_store.list_services(provider_id, active_only=active_only)
    except MarketplaceStoreError as exc:
        raise_store_http_error(exc)


@router.get("/{provider_id}/reviews", response_model=list[ReviewWithClient])
def list_provider_reviews(provider_id: str):
    try:
        return marketplace_store.list_reviews(provider_id)
    except MarketplaceStoreError as exc:
        raise_store_http_error(exc)
