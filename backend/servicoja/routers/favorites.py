from typing import Optional

from fastapi import APIRouter, Header, Query

from servicoja.auth import assert_actor_authorized
from servicoja.models import (
    Favorite,
    FavoriteCheckResponse,
    FavoriteRequest,
    FavoriteWithProvider,
    SuccessResponse,
)
from servicoja.routers.errors import raise_store_http_error
from servicoja.services.marketplace_store import MarketplaceStoreError, marketplace_store

router = APIRouter(prefix="/favorites", tags=["favorites"])


@router.get("", response_model=list[FavoriteWithProvider])
def list_favorites(user_id: str = Query(...)):
    return marketplace_store.list_favorites(user_id)


@router.get("/check", response_model=FavoriteCheckResponse)
def check_favorite(user_id: str = Query(...), provider_id: str = Query(...)):
    return FavoriteCheckResponse(is_favorite=marketplace_store.is_favorite(user_id=user_id, provider_id=provider_id))


@router.post("", response_model=Favorite)
def add_favorite(
    payload: FavoriteRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.user_id, authorization=authorization)
    try:
        return marketplace_store.add_favorite(user_id=payload.user_id, provider_id=payload.provider_id)
    except MarketplaceStoreError as exc:
        raise_store_http_error(exc)


@router.delete("", response_model=SuccessResponse)
def remove_favorite(
    user_id: str = Query(...),
    provider_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    marketplace_store.remove_favorite(user_id=user_id, provider_id=provider_id)
    return SuccessResponse(success=True)
