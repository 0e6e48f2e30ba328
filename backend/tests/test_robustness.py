import hashlib
import importlib
import os
import sqlite3
import sys
from types import SimpleNamespace

import pytest
from fastapi import HTTPException

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from servicoja.services.marketplace_store import MarketplaceStore
from servicoja.services import notification_store as notification_store_module
from servicoja.services.notification_store import NotificationStore
from servicoja.services.push_sender import MAX_TOKENS_PER_BATCH, PushSender


def _fresh_auth():
    sys.modules.pop("servicoja.auth", None)
    return importlib.import_module("servicoja.auth")


def test_auth_ttl_invalid_env_falls_back(monkeypatch):
    monkeypatch.setenv("AUTH_TOKEN_TTL_HOURS", "not-a-number")
    auth = _fresh_auth()
    assert auth.TOKEN_TTL_HOURS == 24


def test_auth_ttl_non_positive_env_falls_back(monkeypatch):
    monkeypatch.setenv("AUTH_TOKEN_TTL_HOURS", "0")
    monkeypatch.setenv("PASSWORD_RESET_TTL_MINUTES", "-5")
    auth = _fresh_auth()
    assert auth.TOKEN_TTL_HOURS == 24
    assert auth.PASSWORD_RESET_TTL_MINUTES == 60


def test_access_token_rejects_tampering():
    auth = _fresh_auth()
    token, _ = auth.create_access_token("usr_abc")
    assert auth.verify_access_token(token) == "usr_abc"

    payload_part, sig_part = token.split(".", 1)
    forged_payload = auth._b64url(b"usr_admin|9999999999")
    assert auth.verify_access_token(f"{forged_payload}.{sig_part}") is None
    assert auth.verify_access_token(f"{payload_part}.") is None
    assert auth.verify_access_token("garbage") is None
    assert auth.verify_access_token("%%%.%%%") is None


def test_access_token_expires(monkeypatch):
    auth = _fresh_auth()
    monkeypatch.setattr(auth, "TOKEN_TTL_HOURS", -1)
    token, _ = auth.create_access_token("usr_abc")
    assert auth.verify_access_token(token) is None


def test_password_hashes_are_salted_and_legacy_hashes_verify():
    auth = _fresh_auth()
    first = auth.hash_password("123456", iterations=1000)
    second = auth.hash_password("123456", iterations=1000)
    assert first != second
    assert first.startswith("pbkdf2_sha256$1000$")
    assert auth.verify_password("123456", first)
    assert not auth.verify_password("654321", first)
    assert not auth.verify_password("123456", "pbkdf2_sha256$bad$zz$zz")

    legacy = hashlib.sha256(b"123456").hexdigest()
    assert auth.verify_password("123456", legacy)
    assert not auth.verify_password("123457", legacy)


def test_actor_authorization_modes(monkeypatch):
    monkeypatch.setenv("AUTH_REQUIRED", "true")
    auth = _fresh_auth()
    with pytest.raises(HTTPException) as missing:
        auth.assert_actor_authorized("usr_a", None)
    assert missing.value.status_code == 401

    token, _ = auth.create_access_token("usr_a")
    auth.assert_actor_authorized("usr_a", f"Bearer {token}")
    with pytest.raises(HTTPException) as mismatch:
        auth.assert_actor_authorized("usr_b", f"Bearer {token}")
    assert mismatch.value.status_code == 403

    monkeypatch.setenv("AUTH_REQUIRED", "false")
    auth = _fresh_auth()
    auth.assert_actor_authorized("usr_a", None)
    assert auth.parse_bearer_token("Basic abc") is None


def test_store_migrates_legacy_tables(tmp_path):
    db_path = tmp_path / "legacy.sqlite3"
    with sqlite3.connect(str(db_path)) as conn:
        conn.execute(
            """
            CREATE TABLE providers (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL UNIQUE,
                description TEXT,
                hourly_rate REAL,
                city TEXT NOT NULL,
                is_verified INTEGER NOT NULL DEFAULT 0,
                total_ratings INTEGER NOT NULL DEFAULT 0,
                average_rating REAL NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
            """
        )
        conn.commit()

    store = MarketplaceStore(db_path=str(db_path), seed=False)
    with sqlite3.connect(store.db_path) as conn:
        columns = {row[1] for row in conn.execute("PRAGMA table_info(providers)").fetchall()}
    assert {"whatsapp", "facebook", "is_online"} <= columns
    assert store.ping() is True


def test_store_accepts_legacy_password_hashes(tmp_path):
    store = MarketplaceStore(db_path=str(tmp_path / "legacy_users.sqlite3"), seed=False)
    with sqlite3.connect(store.db_path) as conn:
        conn.execute(
            """
            INSERT INTO users (id, email, password_hash, name, role, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            ("usr_legacy", "antigo@example.com", hashlib.sha256(b"123456").hexdigest(), "Antigo", "client", "2024-01-01"),
        )
        conn.commit()

    user = store.authenticate("ANTIGO@example.com", "123456")
    assert user is not None
    assert user.id == "usr_legacy"
    assert store.authenticate("antigo@example.com", "wrong1") is None


def test_notification_store_caps_and_marks_read():
    store = NotificationStore()
    for idx in range(105):
        store.create(user_id="usr_n", title=f"t{idx}", body="b", category="order")
    store.create(user_id="usr_other", title="x", body="y")

    rows = store.list_for_user("usr_n")
    assert len(rows) == 100
    assert rows[0].title == "t104"

    updated = store.mark_read("usr_n", rows[0].id)
    assert updated is not None and updated.read is True
    assert store.mark_read("usr_other", rows[1].id) is None
    assert all(row.id != rows[0].id for row in store.list_for_user("usr_n", unread_only=True))

    assert store.register_device_token("usr_n", "  tok  ") is True
    assert store.register_device_token("usr_n", " ") is False
    assert store.device_tokens("usr_n") == ["tok"]


def test_notification_store_titles_counts_and_device_only_data(monkeypatch):
    sent = []
    monkeypatch.setattr(
        notification_store_module.push_sender,
        "send_notification",
        lambda tokens, title, body, data: sent.append((title, data)) or [],
    )
    store = NotificationStore()
    order_note = store.create(user_id="usr_c", title="  ", body="Pedido confirmado", category="order")
    assert order_note.title == "Atualização de pedido"
    store.create(user_id="usr_c", title="", body="Olá", category="message")
    reset_note = store.create(
        user_id="usr_c",
        title="Redefinição de senha",
        body="b",
        category="account",
        deep_link="reset-password",
        device_data={"deep_link": "reset-password:segredo"},
    )

    assert reset_note.deep_link == "reset-password"
    assert sent[-1][1]["deep_link"] == "reset-password:segredo"
    assert sent[-1][1]["notification_id"] == reset_note.id
    assert all("segredo" not in row.model_dump_json() for row in store.list_for_user("usr_c"))

    assert store.unread_counts("usr_c") == {"order": 1, "message": 1, "account": 1, "system": 0}
    assert [row.id for row in store.list_for_user("usr_c", category="order")] == [order_note.id]
    assert store.mark_all_read("usr_c", category="message") == 1
    assert store.unread_counts("usr_c")["message"] == 0
    assert store.mark_all_read("usr_c") == 2
    assert store.mark_all_read("usr_c") == 0
    assert store.unread_counts("usr_other") == {"order": 0, "message": 0, "account": 0, "system": 0}


class _FakeMessaging:
    def __init__(self, dead_tokens):
        self.dead_tokens = set(dead_tokens)
        self.sent = []

    def Notification(self, **kwargs):
        return kwargs

    def AndroidNotification(self, **kwargs):
        return kwargs

    def AndroidConfig(self, **kwargs):
        return kwargs

    def MulticastMessage(self, **kwargs):
        return kwargs

    def send_each_for_multicast(self, message):
        self.sent.append(message)
        responses = []
        for token in message["tokens"]:
            if token in self.dead_tokens:
                error = ValueError("Registration token is not registered")
                responses.append(SimpleNamespace(success=False, exception=error))
            else:
                responses.append(SimpleNamespace(success=True, exception=None))
        return SimpleNamespace(responses=responses)


def _enabled_sender(messaging):
    sender = PushSender()
    sender._initialized = True
    sender._enabled = True
    sender._messaging = messaging
    return sender


def test_push_sender_batches_and_reports_dead_tokens():
    tokens = [f"tok{idx}" for idx in range(MAX_TOKENS_PER_BATCH + 3)]
    messaging = _FakeMessaging(dead_tokens={"tok1", tokens[-1]})
    sender = _enabled_sender(messaging)

    invalid = sender.send_notification(
        tokens=tokens,
        title="Nova mensagem",
        body="Olá",
        data={"category": "message", "deep_link": "conversation:conv_1"},
    )

    assert invalid == ["tok1", tokens[-1]]
    assert [len(message["tokens"]) for message in messaging.sent] == [MAX_TOKENS_PER_BATCH, 3]
    android = messaging.sent[0]["android"]
    assert android["priority"] == "high"
    assert android["collapse_key"] == "conversation:conv_1"
    assert android["notification"]["channel_id"] == "servicoja_message"


def test_push_sender_order_pushes_do_not_collapse():
    messaging = _FakeMessaging(dead_tokens=())
    sender = _enabled_sender(messaging)
    sender.send_notification(
        tokens=["tok"],
        title="Atualização de pedido",
        body="Confirmado",
        data={"category": "order", "deep_link": "order:ord_1"},
    )
    android = messaging.sent[0]["android"]
    assert android["priority"] == "normal"
    assert android["collapse_key"] is None
    assert android["notification"]["channel_id"] == "servicoja_order"


def test_push_sender_disabled_without_credentials(monkeypatch):
    monkeypatch.delenv("FIREBASE_CREDENTIALS_PATH", raising=False)
    sender = PushSender()
    assert sender.enabled is False
    assert sender.send_notification(tokens=["tok"], title="t", body="b", data={}) == []
