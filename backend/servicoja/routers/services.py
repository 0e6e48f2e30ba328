from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query

from servicoja.auth import assert_actor_authorized
from servicoja.models import Service, ServiceCreateRequest, ServiceUpdateRequest, SuccessResponse
from servicoja.routers.errors import raise_store_http_error
from servicoja.services.marketplace_store import MarketplaceStoreError, marketplace_store

router = APIRouter(prefix="/services", tags=["services"])


@router.get("/{service_id}", response_model=Service)
def get_service(service_id: str):
    service = marketplace_store.get_service(service_id)
    if not service:
        raise HTTPException(status_code=404, detail="Service not found")
    return service


@router.post("", response_model=Service)
def create_service(
    payload: ServiceCreateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        return marketplace_store.create_service(
            actor_user_id=payload.actor_user_id,
            provider_id=payload.provider_id,
            name=payload.name,
            category_id=payload.category_id,
            description=payload.description,
            price=payload.price,
            duration_minutes=payload.duration_minutes,
            photo_url=payload.photo_url,
            is_active=payload.is_active,
        )
    except MarketplaceStoreError as exc:
        raise_store_http_error(exc)


@router.put("/{service_id}", response_model=Service)
def update_service(
    service_id: str,
    payload: ServiceUpdateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        return marketplace_store.update_service(
            service_id,
            actor_user_id=payload.actor_user_id,
            updates=payload.model_dump(exclude_unset=True, exclude={"actor_user_id"}),
        )
    except MarketplaceStoreError as exc:
        raise_store_http_error(exc)


@router.delete("/{service_id}", response_model=SuccessResponse)
def delete_service(
    service_id: str,
    actor_user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    try:
        marketplace_store.delete_service(service_id, actor_user_id=actor_user_id)
    except MarketplaceStoreError as exc:
        raise_store_http_error(exc)
    return SuccessResponse(success=True)
