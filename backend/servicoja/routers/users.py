from typing import Optional

from fastapi import APIRouter, Header, HTTPException

from servicoja.auth import assert_actor_authorized
from servicoja.models import User, UserUpdateRequest
from servicoja.routers.errors import raise_store_http_error
from servicoja.services.marketplace_store import MarketplaceStoreError, marketplace_store

router = APIRouter(prefix="/users", tags=["users"])


@router.get("/{user_id}", response_model=User)
def get_user(user_id: str):
    user = marketplace_store.get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.put("/{user_id}", response_model=User)
def update_user(
    user_id: str,
    payload: UserUpdateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return marketplace_store.update_user(user_id, payload.model_dump(exclude_unset=True))
    except MarketplaceStoreError as exc:
        raise_store_http_error(exc)
