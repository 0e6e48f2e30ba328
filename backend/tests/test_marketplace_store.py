import os
import sqlite3
import sys
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from servicoja.services.marketplace_store import (
    MarketplaceStore,
    MarketplaceStoreConflictError,
    MarketplaceStoreNotFoundError,
    MarketplaceStorePermissionError,
    MarketplaceStoreValidationError,
)


def _store(tmp_path, name: str = "market.sqlite3", seed: bool = False) -> MarketplaceStore:
    return MarketplaceStore(db_path=str(tmp_path / name), seed=seed)


def _make_pair(store: MarketplaceStore):
    client = store.create_user(email="cliente@example.com", password="secret1", name="Cliente")
    owner = store.create_user(email="prestador@example.com", password="secret1", name="Prestador")
    provider = store.create_provider(user_id=owner.id, city="Luanda", hourly_rate=2000)
    return client, owner, provider


def _seed_summary(store: MarketplaceStore) -> list:
    return sorted(
        (p.user.name, p.city, p.hourly_rate, p.total_ratings, p.average_rating, tuple(c.name for c in p.categories))
        for p in store.list_providers(limit=100)
    )


def test_seed_is_deterministic_and_idempotent(tmp_path):
    first = _store(tmp_path, "a.sqlite3", seed=True)
    second = _store(tmp_path, "b.sqlite3", seed=True)

    assert len(first.list_categories()) == 8
    assert len(first.list_providers(limit=100)) == 20
    assert _seed_summary(first) == _seed_summary(second)
    assert first.seed_if_needed() is False
    assert first.authenticate("cliente1@teste.com", "123456") is not None


def test_reset_clears_and_reseeds(tmp_path):
    store = _store(tmp_path, seed=True)
    store.create_user(email="extra@example.com", password="secret1", name="Extra")
    store.reset(reseed=True)
    assert store.get_user_by_email("extra@example.com") is None
    assert len(store.list_providers(limit=100)) == 20

    store.reset(reseed=False)
    assert store.list_categories() == []


def test_rating_average_rounds_half_up(tmp_path):
    store = _store(tmp_path)
    client, _, provider = _make_pair(store)
    for rating in (5, 4, 4, 4):
        store.create_review(client_id=client.id, provider_id=provider.id, rating=rating)

    updated = store.get_provider(provider.id)
    assert updated.total_ratings == 4
    assert updated.average_rating == 4.3

    with pytest.raises(MarketplaceStoreValidationError):
        store.create_review(client_id=client.id, provider_id=provider.id, rating=0)


def test_review_order_must_match_pair(tmp_path):
    store = _store(tmp_path)
    client, owner, provider = _make_pair(store)
    stranger = store.create_user(email="outro@example.com", password="secret1", name="Outro")
    order = store.create_order(client_id=client.id, provider_id=provider.id)
    for status in ("confirmed", "in_progress", "completed"):
        store.update_order_status(order.id, actor_user_id=owner.id, status=status)

    with pytest.raises(MarketplaceStoreValidationError):
        store.create_review(client_id=stranger.id, provider_id=provider.id, rating=5, order_id=order.id)
    review = store.create_review(client_id=client.id, provider_id=provider.id, rating=5, order_id=order.id)
    assert review.order_id == order.id
    with pytest.raises(MarketplaceStoreConflictError):
        store.create_review(client_id=client.id, provider_id=provider.id, rating=3, order_id=order.id)


def test_order_state_machine(tmp_path):
    store = _store(tmp_path)
    client, owner, provider = _make_pair(store)
    stranger = store.create_user(email="outro@example.com", password="secret1", name="Outro")

    order = store.create_order(client_id=client.id, provider_id=provider.id, price=1500)
    assert order.status == "pending"

    with pytest.raises(MarketplaceStorePermissionError):
        store.update_order_status(order.id, actor_user_id=client.id, status="declined")
    with pytest.raises(MarketplaceStorePermissionError):
        store.update_order_status(order.id, actor_user_id=stranger.id, status="cancelled")
    with pytest.raises(MarketplaceStoreValidationError):
        store.update_order_status(order.id, actor_user_id=owner.id, status="in_progress")

    confirmed = store.update_order_status(order.id, actor_user_id=owner.id, status="confirmed")
    assert confirmed.status == "confirmed"
    with pytest.raises(MarketplaceStoreValidationError):
        store.update_order_status(order.id, actor_user_id=owner.id, status="completed")

    store.update_order_status(order.id, actor_user_id=owner.id, status="in_progress")
    completed = store.update_order_status(order.id, actor_user_id=owner.id, status="completed", note="Tudo feito")
    assert completed.completed_date is not None
    assert completed.provider_notes == "Tudo feito"
    assert completed.client_notes is None
    with pytest.raises(MarketplaceStoreConflictError):
        store.update_order_status(order.id, actor_user_id=owner.id, status="cancelled")

    cancelled_order = store.create_order(client_id=client.id, provider_id=provider.id)
    cancelled = store.update_order_status(
        cancelled_order.id,
        actor_user_id=client.id,
        status="cancelled",
        note="Mudei de planos",
    )
    assert cancelled.status == "cancelled"
    assert cancelled.client_notes == "Mudei de planos"

    with pytest.raises(MarketplaceStoreNotFoundError):
        store.update_order_status("ord_missing", actor_user_id=owner.id, status="confirmed")


def test_order_service_rules(tmp_path):
    store = _store(tmp_path)
    client, owner, provider = _make_pair(store)
    other_owner = store.create_user(email="segundo@example.com", password="secret1", name="Segundo")
    other_provider = store.create_provider(user_id=other_owner.id, city="Huambo")

    service = store.create_service(actor_user_id=owner.id, provider_id=provider.id, name="Pintura", price=8000)
    foreign = store.create_service(actor_user_id=other_owner.id, provider_id=other_provider.id, name="Jardim")

    order = store.create_order(client_id=client.id, provider_id=provider.id, service_id=service.id)
    assert order.price == 8000
    with pytest.raises(MarketplaceStoreValidationError):
        store.create_order(client_id=client.id, provider_id=provider.id, service_id=foreign.id)
    with pytest.raises(MarketplaceStoreValidationError):
        store.create_order(client_id=owner.id, provider_id=provider.id)
    with pytest.raises(MarketplaceStoreValidationError):
        store.create_order(client_id=client.id, provider_id=provider.id, scheduled_date="next tuesday")

    store.update_service(service.id, actor_user_id=owner.id, updates={"is_active": False})
    with pytest.raises(MarketplaceStoreValidationError):
        store.create_order(client_id=client.id, provider_id=provider.id, service_id=service.id)

    views = store.list_orders(owner.id, role="provider")
    assert [view.service_name for view in views] == ["Pintura"]
    assert views[0].provider_name == "Prestador"
    assert store.list_orders(other_owner.id) == []
    with pytest.raises(MarketplaceStoreValidationError):
        store.list_orders(client.id, role="admin")


def test_conversation_is_unique_per_pair_and_tracks_unread(tmp_path):
    store = _store(tmp_path)
    client, owner, provider = _make_pair(store)

    conversation = store.get_or_create_conversation(client_id=client.id, provider_id=provider.id)
    again = store.get_or_create_conversation(client_id=client.id, provider_id=provider.id)
    assert again.id == conversation.id

    message, recipient = store.create_message(conversation_id=conversation.id, sender_id=client.id, content="Olá")
    assert recipient == owner.id
    _, recipient = store.create_message(conversation_id=conversation.id, sender_id=owner.id, content="Bom dia")
    assert recipient == client.id
    store.create_message(conversation_id=conversation.id, sender_id=client.id, content="Preciso de ajuda")

    owner_view = store.list_conversations(owner.id)
    assert len(owner_view) == 1
    assert owner_view[0].unread_count == 2
    assert owner_view[0].last_message.content == "Preciso de ajuda"
    assert owner_view[0].last_message_at >= message.created_at

    assert store.mark_messages_read(conversation.id, user_id=owner.id) == 2
    assert store.mark_messages_read(conversation.id, user_id=owner.id) == 0
    assert store.list_conversations(client.id)[0].unread_count == 1

    with pytest.raises(MarketplaceStoreValidationError):
        store.create_message(conversation_id=conversation.id, sender_id=client.id, content="x" * 2001)
    with pytest.raises(MarketplaceStoreNotFoundError):
        store.create_message(conversation_id="conv_missing", sender_id=client.id, content="Olá")


def test_messages_after_filter(tmp_path):
    store = _store(tmp_path)
    client, owner, provider = _make_pair(store)
    conversation = store.get_or_create_conversation(client_id=client.id, provider_id=provider.id)
    first, _ = store.create_message(conversation_id=conversation.id, sender_id=client.id, content="Primeira")
    second, _ = store.create_message(conversation_id=conversation.id, sender_id=owner.id, content="Segunda")

    assert [m.id for m in store.list_messages(conversation.id)] == [first.id, second.id]
    assert [m.id for m in store.list_messages(conversation.id, after=first.created_at)] == [second.id]
    assert store.list_messages(conversation.id, after=second.created_at) == []
    with pytest.raises(MarketplaceStoreValidationError):
        store.list_messages(conversation.id, after="yesterday")


def test_inbox_orders_by_latest_message(tmp_path):
    store = _store(tmp_path)
    client, owner, provider = _make_pair(store)
    other_owner = store.create_user(email="eletricista@example.com", password="secret1", name="Eletricista")
    other_provider = store.create_provider(user_id=other_owner.id, city="Benguela", hourly_rate=3000)

    older = store.get_or_create_conversation(client_id=client.id, provider_id=provider.id)
    newer = store.get_or_create_conversation(client_id=client.id, provider_id=other_provider.id)
    assert [c.id for c in store.list_conversations(client.id)] == [newer.id, older.id]

    message, _ = store.create_message(conversation_id=older.id, sender_id=owner.id, content="Posso ir amanhã")
    inbox = store.list_conversations(client.id)
    assert [c.id for c in inbox] == [older.id, newer.id]
    assert inbox[0].last_message.id == message.id
    assert inbox[0].unread_count == 1
    assert inbox[1].last_message is None

    store.create_message(conversation_id=newer.id, sender_id=client.id, content="Está disponível?")
    assert [c.id for c in store.list_conversations(client.id)] == [newer.id, older.id]
    assert [c.id for c in store.list_conversations(owner.id)] == [older.id]


def test_timestamps_accept_utc_z_suffix(tmp_path):
    store = _store(tmp_path)
    client, owner, provider = _make_pair(store)
    conversation = store.get_or_create_conversation(client_id=client.id, provider_id=provider.id)
    first, _ = store.create_message(conversation_id=conversation.id, sender_id=client.id, content="Primeira")
    second, _ = store.create_message(conversation_id=conversation.id, sender_id=owner.id, content="Segunda")

    zulu = first.created_at.replace("+00:00", "Z")
    assert zulu.endswith("Z")
    assert [m.id for m in store.list_messages(conversation.id, after=zulu)] == [second.id]

    order = store.create_order(
        client_id=client.id,
        provider_id=provider.id,
        scheduled_date="2026-11-02T10:00:00.000Z",
    )
    assert order.scheduled_date == "2026-11-02T10:00:00+00:00"


def test_password_reset_tokens(tmp_path):
    store = _store(tmp_path)
    user = store.create_user(email="reset@example.com", password="secret1", name="Reset")

    assert store.create_password_reset("ghost@example.com") is None
    _, stale_token = store.create_password_reset("RESET@example.com")
    _, token = store.create_password_reset("reset@example.com")

    with pytest.raises(MarketplaceStoreValidationError):
        store.reset_password(stale_token, "newpass1")
    store.reset_password(token, "newpass1")
    assert store.authenticate("reset@example.com", "newpass1").id == user.id
    with pytest.raises(MarketplaceStoreValidationError):
        store.reset_password(token, "newpass2")

    _, expired_token = store.create_password_reset("reset@example.com")
    past = (datetime.now(timezone.utc) - timedelta(minutes=1)).isoformat()
    with sqlite3.connect(store.db_path) as conn:
        conn.execute("UPDATE password_resets SET expires_at = ? WHERE used_at IS NULL", (past,))
        conn.commit()
    with pytest.raises(MarketplaceStoreValidationError):
        store.reset_password(expired_token, "newpass3")


def test_provider_profile_promotes_role_once(tmp_path):
    store = _store(tmp_path)
    user = store.create_user(email="novo@example.com", password="secret1", name="Novo")
    provider = store.create_provider(user_id=user.id, city="  Benguela ", whatsapp=" ")
    assert provider.city == "Benguela"
    assert provider.whatsapp is None
    assert store.get_user(user.id).role == "provider"

    with pytest.raises(MarketplaceStoreConflictError):
        store.create_provider(user_id=user.id, city="Luanda")
    with pytest.raises(MarketplaceStoreNotFoundError):
        store.create_provider(user_id="usr_missing", city="Luanda")
    with pytest.raises(MarketplaceStoreValidationError):
        store.update_provider(provider.id, actor_user_id=user.id, updates={"city": "   "})
