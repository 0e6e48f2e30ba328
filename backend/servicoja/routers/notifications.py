from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query

from servicoja.auth import assert_actor_authorized
from servicoja.models import (
    DeviceTokenRegisterRequest,
    NotificationCategory,
    NotificationRecord,
    SuccessResponse,
    UnreadCountResponse,
)
from servicoja.services.notification_store import notification_store

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationRecord])
def list_notifications(
    user_id: str = Query(...),
    unread_only: bool = Query(default=False),
    category: Optional[NotificationCategory] = Query(default=None),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    return notification_store.list_for_user(user_id=user_id, unread_only=unread_only, category=category)


@router.get("/unread-count", response_model=UnreadCountResponse)
def unread_count(
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    counts = notification_store.unread_counts(user_id)
    return UnreadCountResponse(total=sum(counts.values()), by_category=counts)


@router.post("/register-device", response_model=dict)
def register_device(
    payload: DeviceTokenRegisterRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.user_id, authorization=authorization)
    if not notification_store.register_device_token(user_id=payload.user_id, device_token=payload.device_token):
        raise HTTPException(status_code=400, detail="device_token is required")
    return {"status": "ok", "platform": payload.platform}


@router.post("/read-all", response_model=SuccessResponse)
def mark_all_notifications_read(
    user_id: str = Query(...),
    category: Optional[NotificationCategory] = Query(default=None),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    return SuccessResponse(updated=notification_store.mark_all_read(user_id=user_id, category=category))


@router.post("/{notification_id}/read", response_model=NotificationRecord)
def mark_notification_read(
    notification_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    updated = notification_store.mark_read(user_id=user_id, notification_id=notification_id)
    if not updated:
        raise HTTPException(status_code=404, detail="Notification not found")
    return updated
