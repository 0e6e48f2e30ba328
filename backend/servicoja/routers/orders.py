from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query

from servicoja.auth import assert_actor_authorized
from servicoja.models import OrderCreateRequest, OrderStatusUpdateRequest, ServiceOrder, ServiceOrderView
from servicoja.routers.errors import raise_store_http_error
from servicoja.services.marketplace_store import MarketplaceStoreError, marketplace_store
from servicoja.services.notification_store import notification_store

router = APIRouter(prefix="/orders", tags=["orders"])

STATUS_LABELS = {
    "pending": "pendente",
    "confirmed": "confirmado",
    "declined": "recusado",
    "in_progress": "em andamento",
    "completed": "concluído",
    "cancelled": "cancelado",
}


@router.post("", response_model=ServiceOrder)
def create_order(
    payload: OrderCreateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.client_id, authorization=authorization)
    try:
        order = marketplace_store.create_order(
            client_id=payload.client_id,
            provider_id=payload.provider_id,
            service_id=payload.service_id,
            scheduled_date=payload.scheduled_date,
            price=payload.price,
            notes=payload.notes,
        )
    except MarketplaceStoreError as exc:
        raise_store_http_error(exc)
    owner_id = marketplace_store.provider_owner_user_id(order.provider_id)
    if owner_id:
        client = marketplace_store.get_user(order.client_id)
        notification_store.create(
            user_id=owner_id,
            title="Novo pedido de serviço",
            body=f"{client.name if client else 'Um cliente'} solicitou um serviço.",
            category="order",
            deep_link=f"order:{order.id}",
        )
    return order


@router.get("", response_model=list[ServiceOrderView])
def list_orders(
    user_id: str = Query(...),
    role: Optional[str] = Query(default=None),
):
    try:
        return marketplace_store.list_orders(user_id, role=role)
    except MarketplaceStoreError as exc:
        raise_store_http_error(exc)


@router.get("/{order_id}", response_model=ServiceOrder)
def get_order(order_id: str):
    order = marketplace_store.get_order(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@router.post("/{order_id}/status", response_model=ServiceOrder)
def update_order_status(
    order_id: str,
    payload: OrderStatusUpdateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        order = marketplace_store.update_order_status(
            order_id,
            actor_user_id=payload.actor_user_id,
            status=payload.status,
            note=payload.note,
        )
    except MarketplaceStoreError as exc:
        raise_store_http_error(exc)
    owner_id = marketplace_store.provider_owner_user_id(order.provider_id)
    recipient_id = order.client_id if payload.actor_user_id == owner_id else owner_id
    if recipient_id:
        notification_store.create(
            user_id=recipient_id,
            title="Pedido atualizado",
            body=f"O seu pedido está agora {STATUS_LABELS.get(order.status, order.status)}.",
            category="order",
            deep_link=f"order:{order.id}",
        )
    return order
