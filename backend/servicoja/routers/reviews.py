from typing import Optional

from fastapi import APIRouter, Header

from servicoja.auth import assert_actor_authorized
from servicoja.models import Review, ReviewCreateRequest
from servicoja.routers.errors import raise_store_http_error
from servicoja.services.marketplace_store import MarketplaceStoreError, marketplace_store
from servicoja.services.notification_store import notification_store

router = APIRouter(prefix="/reviews", tags=["reviews"])


@router.post("", response_model=Review)
def create_review(
    payload: ReviewCreateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.client_id, authorization=authorization)
    try:
        review = marketplace_store.create_review(
            client_id=payload.client_id,
            provider_id=payload.provider_id,
            rating=payload.rating,
            comment=payload.comment,
            order_id=payload.order_id,
        )
    except MarketplaceStoreError as exc:
        raise_store_http_error(exc)
    owner_id = marketplace_store.provider_owner_user_id(review.provider_id)
    if owner_id:
        notification_store.create(
            user_id=owner_id,
            title="Nova avaliação",
            body=f"Recebeu uma avaliação de {review.rating} estrelas.",
            category="system",
            deep_link=f"provider:{review.provider_id}",
        )
    return review
