from typing import Optional

from fastapi import APIRouter, Header

from servicoja.auth import assert_actor_authorized
from servicoja.models import Category, CategoryCreateRequest
from servicoja.routers.errors import raise_store_http_error
from servicoja.services.marketplace_store import MarketplaceStoreError, marketplace_store

router = APIRouter(prefix="/categories", tags=["categories"])


@router.get("", response_model=list[Category])
def list_categories():
    return marketplace_store.list_categories()


@router.post("", response_model=Category)
def create_category(
    payload: CategoryCreateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        return marketplace_store.create_category(
            actor_user_id=payload.actor_user_id,
            name=payload.name,
            icon=payload.icon,
            description=payload.description,
        )
    except MarketplaceStoreError as exc:
        raise_store_http_error(exc)
