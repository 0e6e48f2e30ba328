import logging
import os
import random
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from servicoja import data
from servicoja.auth import (
    MIN_PASSWORD_LENGTH,
    create_reset_token,
    hash_password,
    hash_reset_token,
    verify_password,
)
from servicoja.models import (
    Category,
    Conversation,
    ConversationSummary,
    Favorite,
    FavoriteWithProvider,
    Message,
    MessageWithSender,
    Provider,
    ProviderDetails,
    ProviderSummary,
    ProviderWithUser,
    Review,
    ReviewWithClient,
    Service,
    ServiceOrder,
    ServiceOrderView,
    User,
)

logger = logging.getLogger(__name__)


ORDER_TRANSITIONS: Dict[str, set[str]] = {
    "pending": {"confirmed", "declined", "cancelled"},
    "confirmed": {"in_progress", "cancelled"},
    "in_progress": {"completed"},
}

ORDER_TERMINAL_STATUSES = {"completed", "declined", "cancelled"}

PROVIDER_ONLY_ORDER_STATUSES = {"confirmed", "declined", "in_progress", "completed"}

PROVIDER_SORTS = {"rating", "price", "name"}
ORDER_ROLES = {None, "all", "client", "provider"}
USER_ROLES = {"client", "provider", "admin"}

MAX_PAGE_SIZE = 100
MAX_MESSAGE_LENGTH = 2000

USER_UPDATE_COLUMNS = {"email", "name", "phone", "city", "photo_url"}
PROVIDER_UPDATE_COLUMNS = {"city", "description", "hourly_rate", "whatsapp", "facebook", "is_online"}
SERVICE_UPDATE_COLUMNS = {
    "name",
    "category_id",
    "description",
    "price",
    "duration_minutes",
    "photo_url",
    "is_active",
}


class MarketplaceStoreError(ValueError):
    """Base class for user-visible marketplace-store errors."""


class MarketplaceStoreValidationError(MarketplaceStoreError):
    pass


class MarketplaceStoreNotFoundError(MarketplaceStoreError):
    pass


class MarketplaceStoreConflictError(MarketplaceStoreError):
    pass


class MarketplaceStorePermissionError(MarketplaceStoreError):
    pass


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


def _normalize_email(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def _clean_optional(value: Any) -> Optional[str]:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


def _round_rating(points: int, count: int) -> float:
    if not count:
        return 0.0
    average = Decimal(points) / Decimal(count)
    return float(average.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def _parse_timestamp(value: str, *, field: str) -> str:
    raw = value.strip().replace(" ", "+")
    # Python 3.10 fromisoformat does not accept the "Z" suffix JavaScript clients send.
    if raw[-1:] in ("Z", "z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise MarketplaceStoreValidationError(f"{field} must be an ISO-8601 timestamp") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


@dataclass
class MarketplaceStore:
    db_path: str
    seed: bool = True

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._init_db()
        if self.seed:
            self.seed_if_needed()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_db(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS users (
                        id TEXT PRIMARY KEY,
                        email TEXT NOT NULL UNIQUE,
                        password_hash TEXT NOT NULL,
                        name TEXT NOT NULL,
                        phone TEXT,
                        city TEXT,
                        photo_url TEXT,
                        role TEXT NOT NULL DEFAULT 'client',
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS password_resets (
                        token_hash TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                        expires_at TEXT NOT NULL,
                        used_at TEXT,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS providers (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL UNIQUE REFERENCES users(id) ON DELETE CASCADE,
                        description TEXT,
                        hourly_rate REAL,
                        city TEXT NOT NULL,
                        whatsapp TEXT,
                        facebook TEXT,
                        is_verified INTEGER NOT NULL DEFAULT 0,
                        is_online INTEGER NOT NULL DEFAULT 0,
                        total_ratings INTEGER NOT NULL DEFAULT 0,
                        average_rating REAL NOT NULL DEFAULT 0,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS categories (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL UNIQUE,
                        icon TEXT NOT NULL,
                        description TEXT
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS provider_categories (
                        provider_id TEXT NOT NULL REFERENCES providers(id) ON DELETE CASCADE,
                        category_id TEXT NOT NULL REFERENCES categories(id) ON DELETE CASCADE,
                        PRIMARY KEY (provider_id, category_id)
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS services (
                        id TEXT PRIMARY KEY,
                        provider_id TEXT NOT NULL REFERENCES providers(id) ON DELETE CASCADE,
                        category_id TEXT REFERENCES categories(id) ON DELETE SET NULL,
                        name TEXT NOT NULL,
                        description TEXT,
                        price REAL,
                        duration_minutes INTEGER,
                        photo_url TEXT,
                        is_active INTEGER NOT NULL DEFAULT 1,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS service_orders (
                        id TEXT PRIMARY KEY,
                        client_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                        provider_id TEXT NOT NULL REFERENCES providers(id) ON DELETE CASCADE,
                        service_id TEXT REFERENCES services(id) ON DELETE SET NULL,
                        status TEXT NOT NULL,
                        scheduled_date TEXT,
                        completed_date TEXT,
                        price REAL,
                        notes TEXT,
                        client_notes TEXT,
                        provider_notes TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS order_status_history (
                        id TEXT PRIMARY KEY,
                        order_id TEXT NOT NULL REFERENCES service_orders(id) ON DELETE CASCADE,
                        actor_user_id TEXT NOT NULL,
                        from_status TEXT NOT NULL,
                        to_status TEXT NOT NULL,
                        note TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS reviews (
                        id TEXT PRIMARY KEY,
                        provider_id TEXT NOT NULL REFERENCES providers(id) ON DELETE CASCADE,
                        client_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                        order_id TEXT REFERENCES service_orders(id) ON DELETE SET NULL,
                        rating INTEGER NOT NULL,
                        comment TEXT,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS conversations (
                        id TEXT PRIMARY KEY,
                        client_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                        provider_id TEXT NOT NULL REFERENCES providers(id) ON DELETE CASCADE,
                        last_message_at TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        UNIQUE (client_id, provider_id)
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS messages (
                        id TEXT PRIMARY KEY,
                        conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                        sender_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                        content TEXT NOT NULL,
                        is_read INTEGER NOT NULL DEFAULT 0,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS favorites (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                        provider_id TEXT NOT NULL REFERENCES providers(id) ON DELETE CASCADE,
                        created_at TEXT NOT NULL,
                        UNIQUE (user_id, provider_id)
                    )
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_services_provider ON services (provider_id)")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_reviews_provider ON reviews (provider_id)")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages (conversation_id)")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_client ON service_orders (client_id)")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_provider ON service_orders (provider_id)")
                # Columns that older Postgres-era exports lacked.
                self._ensure_column(conn, "providers", "whatsapp", "TEXT")
                self._ensure_column(conn, "providers", "facebook", "TEXT")
                self._ensure_column(conn, "providers", "is_online", "INTEGER NOT NULL DEFAULT 0")
                self._ensure_column(conn, "services", "category_id", "TEXT")
                self._ensure_column(conn, "services", "duration_minutes", "INTEGER")
                self._ensure_column(conn, "services", "is_active", "INTEGER NOT NULL DEFAULT 1")
                self._ensure_column(conn, "services", "created_at", "TEXT NOT NULL DEFAULT ''")
                self._ensure_column(conn, "reviews", "order_id", "TEXT")
                conn.commit()

    def _ensure_column(self, conn: sqlite3.Connection, table: str, column: str, definition: str) -> None:
        columns = conn.execute(f"PRAGMA table_info({table})").fetchall()
        existing = {row["name"] for row in columns}
        if column in existing:
            return
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

    def _apply_update(self, conn: sqlite3.Connection, table: str, row_id: str, updates: Dict[str, Any]) -> None:
        if not updates:
            return
        assignments = ", ".join(f"{column} = ?" for column in updates)
        conn.execute(f"UPDATE {table} SET {assignments} WHERE id = ?", (*updates.values(), row_id))

    # Seeding

    def seed_if_needed(self) -> bool:
        with self._lock:
            with self._connect() as conn:
                existing = conn.execute("SELECT COUNT(*) AS total FROM categories").fetchone()
                if existing["total"]:
                    return False
                self._seed_catalogue(conn)
                conn.commit()
        logger.info("Seeded demo marketplace into %s", self.db_path)
        return True

    def _seed_catalogue(self, conn: sqlite3.Connection) -> None:
        rng = random.Random(data.SEED_RANDOM_STATE)
        # One hash for every demo account keeps startup fast.
        password_hash = hash_password(data.DEMO_PASSWORD)
        now = _utc_now()

        categories: List[Category] = []
        for item in data.CATEGORIES:
            category = Category(id=_new_id("cat"), **item)
            self._insert_category(conn, category)
            categories.append(category)

        admin = User(id=_new_id("usr"), role="admin", created_at=now, **data.ADMIN_USER)
        self._insert_user(conn, admin, password_hash)

        clients: List[User] = []
        for name, email in data.CLIENTS:
            client = User(
                id=_new_id("usr"),
                email=email,
                name=name,
                city=rng.choice(data.CITIES),
                role="client",
                created_at=now,
            )
            self._insert_user(conn, client, password_hash)
            clients.append(client)

        providers: List[Provider] = []
        for index, (name, city) in enumerate(data.PROVIDERS, start=1):
            user = User(
                id=_new_id("usr"),
                email=f"provider{index}@servicoja.ao",
                name=name,
                city=city,
                role="provider",
                created_at=now,
            )
            self._insert_user(conn, user, password_hash)

            hourly_rate = float(rng.randint(10, 49) * 100)
            provider = Provider(
                id=_new_id("prv"),
                user_id=user.id,
                description=rng.choice(data.PROVIDER_DESCRIPTIONS),
                hourly_rate=hourly_rate,
                city=city,
                is_verified=rng.random() > 0.4,
                created_at=now,
            )
            self._insert_provider(conn, provider)
            providers.append(provider)

            selected = rng.sample(categories, rng.randint(1, 2))
            for category in selected:
                conn.execute(
                    "INSERT OR IGNORE INTO provider_categories (provider_id, category_id) VALUES (?, ?)",
                    (provider.id, category.id),
                )

            primary = selected[0]
            self._insert_service(
                conn,
                Service(
                    id=_new_id("svc"),
                    provider_id=provider.id,
                    category_id=primary.id,
                    name=f"Serviço de {primary.name}",
                    description=f"Oferecemos serviços completos de {primary.name.lower()} com qualidade garantida.",
                    price=hourly_rate,
                    duration_minutes=60,
                    created_at=now,
                ),
            )
            if rng.random() > 0.3:
                self._insert_service(
                    conn,
                    Service(
                        id=_new_id("svc"),
                        provider_id=provider.id,
                        category_id=primary.id,
                        name=f"Consultoria {primary.name}",
                        description=f"Avaliação e consultoria especializada em {primary.name.lower()}.",
                        price=hourly_rate * 0.5,
                        duration_minutes=30,
                        created_at=now,
                    ),
                )

        for provider in providers:
            for _ in range(rng.randint(2, 9)):
                self._insert_review(
                    conn,
                    Review(
                        id=_new_id("rev"),
                        provider_id=provider.id,
                        client_id=rng.choice(clients).id,
                        rating=rng.randint(4, 5),
                        comment=rng.choice(data.REVIEW_COMMENTS) if rng.random() > 0.3 else None,
                        created_at=now,
                    ),
                )
            self._refresh_provider_rating(conn, provider.id)

    def reset(self, *, reseed: bool = True) -> None:
        with self._lock:
            with self._connect() as conn:
                for table in (
                    "messages",
                    "conversations",
                    "favorites",
                    "reviews",
                    "order_status_history",
                    "service_orders",
                    "services",
                    "provider_categories",
                    "providers",
                    "categories",
                    "password_resets",
                    "users",
                ):
                    conn.execute(f"DELETE FROM {table}")
                conn.commit()
        logger.info("Cleared marketplace data in %s", self.db_path)
        if reseed:
            self.seed_if_needed()

    def ping(self) -> bool:
        try:
            with self._lock:
                with self._connect() as conn:
                    row = conn.execute("SELECT 1 AS ok").fetchone()
        except sqlite3.Error:
            logger.exception("Marketplace database ping failed path=%s", self.db_path)
            return False
        return bool(row and row["ok"] == 1)

    # Row mapping

    def _row_to_user(self, row: sqlite3.Row) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            name=row["name"],
            phone=row["phone"],
            city=row["city"],
            photo_url=row["photo_url"],
            role=row["role"],
            created_at=row["created_at"],
        )

    def _row_to_provider(self, row: sqlite3.Row) -> Provider:
        return Provider(
            id=row["id"],
            user_id=row["user_id"],
            description=row["description"],
            hourly_rate=float(row["hourly_rate"]) if row["hourly_rate"] is not None else None,
            city=row["city"],
            whatsapp=row["whatsapp"],
            facebook=row["facebook"],
            is_verified=bool(row["is_verified"]),
            is_online=bool(row["is_online"]),
            total_ratings=int(row["total_ratings"] or 0),
            average_rating=float(row["average_rating"] or 0.0),
            created_at=row["created_at"],
        )

    def _row_to_category(self, row: sqlite3.Row) -> Category:
        return Category(id=row["id"], name=row["name"], icon=row["icon"], description=row["description"])

    def _row_to_service(self, row: sqlite3.Row) -> Service:
        return Service(
            id=row["id"],
            provider_id=row["provider_id"],
            category_id=row["category_id"],
            name=row["name"],
            description=row["description"],
            price=float(row["price"]) if row["price"] is not None else None,
            duration_minutes=row["duration_minutes"],
            photo_url=row["photo_url"],
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
        )

    def _row_to_review(self, row: sqlite3.Row) -> Review:
        return Review(
            id=row["id"],
            provider_id=row["provider_id"],
            client_id=row["client_id"],
            order_id=row["order_id"],
            rating=int(row["rating"]),
            comment=row["comment"],
            created_at=row["created_at"],
        )

    def _row_to_conversation(self, row: sqlite3.Row) -> Conversation:
        return Conversation(
            id=row["id"],
            client_id=row["client_id"],
            provider_id=row["provider_id"],
            last_message_at=row["last_message_at"],
            created_at=row["created_at"],
        )

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            conversation_id=row["conversation_id"],
            sender_id=row["sender_id"],
            content=row["content"],
            is_read=bool(row["is_read"]),
            created_at=row["created_at"],
        )

    def _row_to_favorite(self, row: sqlite3.Row) -> Favorite:
        return Favorite(
            id=row["id"],
            user_id=row["user_id"],
            provider_id=row["provider_id"],
            created_at=row["created_at"],
        )

    def _row_to_order(self, row: sqlite3.Row) -> ServiceOrder:
        return ServiceOrder(
            id=row["id"],
            client_id=row["client_id"],
            provider_id=row["provider_id"],
            service_id=row["service_id"],
            status=row["status"],
            scheduled_date=row["scheduled_date"],
            completed_date=row["completed_date"],
            price=float(row["price"]) if row["price"] is not None else None,
            notes=row["notes"],
            client_notes=row["client_notes"],
            provider_notes=row["provider_notes"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # Inserts

    def _insert_user(self, conn: sqlite3.Connection, user: User, password_hash: str) -> None:
        conn.execute(
            """
            INSERT INTO users (id, email, password_hash, name, phone, city, photo_url, role, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user.id,
                user.email,
                password_hash,
                user.name,
                user.phone,
                user.city,
                user.photo_url,
                user.role,
                user.created_at,
            ),
        )

    def _insert_category(self, conn: sqlite3.Connection, category: Category) -> None:
        conn.execute(
            "INSERT INTO categories (id, name, icon, description) VALUES (?, ?, ?, ?)",
            (category.id, category.name, category.icon, category.description),
        )

    def _insert_provider(self, conn: sqlite3.Connection, provider: Provider) -> None:
        conn.execute(
            """
            INSERT INTO providers (
                id, user_id, description, hourly_rate, city, whatsapp, facebook,
                is_verified, is_online, total_ratings, average_rating, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                provider.id,
                provider.user_id,
                provider.description,
                provider.hourly_rate,
                provider.city,
                provider.whatsapp,
                provider.facebook,
                int(provider.is_verified),
                int(provider.is_online),
                provider.total_ratings,
                provider.average_rating,
                provider.created_at,
            ),
        )

    def _insert_service(self, conn: sqlite3.Connection, service: Service) -> None:
        conn.execute(
            """
            INSERT INTO services (
                id, provider_id, category_id, name, description, price,
                duration_minutes, photo_url, is_active, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                service.id,
                service.provider_id,
                service.category_id,
                service.name,
                service.description,
                service.price,
                service.duration_minutes,
                service.photo_url,
                int(service.is_active),
                service.created_at,
            ),
        )

    def _insert_review(self, conn: sqlite3.Connection, review: Review) -> None:
        conn.execute(
            """
            INSERT INTO reviews (id, provider_id, client_id, order_id, rating, comment, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                review.id,
                review.provider_id,
                review.client_id,
                review.order_id,
                review.rating,
                review.comment,
                review.created_at,
            ),
        )

    def _insert_order_history(
        self,
        conn: sqlite3.Connection,
        order_id: str,
        actor_user_id: str,
        from_status: str,
        to_status: str,
        note: str,
    ) -> None:
        conn.execute(
            """
            INSERT INTO order_status_history (id, order_id, actor_user_id, from_status, to_status, note, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (_new_id("osh"), order_id, actor_user_id, from_status, to_status, note, _utc_now()),
        )

    # Shared lookups

    def _fetch_user(self, conn: sqlite3.Connection, user_id: str) -> Optional[sqlite3.Row]:
        return conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()

    def _require_user(self, conn: sqlite3.Connection, user_id: str) -> sqlite3.Row:
        row = self._fetch_user(conn, user_id)
        if not row:
            raise MarketplaceStoreNotFoundError("User not found")
        return row

    def _require_provider(self, conn: sqlite3.Connection, provider_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM providers WHERE id = ?", (provider_id,)).fetchone()
        if not row:
            raise MarketplaceStoreNotFoundError("Provider not found")
        return row

    def _require_service(self, conn: sqlite3.Connection, service_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM services WHERE id = ?", (service_id,)).fetchone()
        if not row:
            raise MarketplaceStoreNotFoundError("Service not found")
        return row

    def _require_conversation(self, conn: sqlite3.Connection, conversation_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
        if not row:
            raise MarketplaceStoreNotFoundError("Conversation not found")
        return row

    def _assert_provider_owner(self, provider_row: sqlite3.Row, actor_user_id: str) -> None:
        if provider_row["user_id"] != actor_user_id:
            raise MarketplaceStorePermissionError("Only the provider can manage this profile")

    def _assert_categories_exist(self, conn: sqlite3.Connection, category_ids: List[str]) -> None:
        if not category_ids:
            return
        rows = conn.execute(
            f"SELECT id FROM categories WHERE id IN ({_placeholders(len(category_ids))})",
            tuple(category_ids),
        ).fetchall()
        missing = set(category_ids) - {row["id"] for row in rows}
        if missing:
            raise MarketplaceStoreValidationError(f"Unknown category ids: {', '.join(sorted(missing))}")

    def _users_by_id(self, conn: sqlite3.Connection, user_ids: Iterable[str]) -> Dict[str, User]:
        unique_ids = list(dict.fromkeys(user_ids))
        if not unique_ids:
            return {}
        rows = conn.execute(
            f"SELECT * FROM users WHERE id IN ({_placeholders(len(unique_ids))})",
            tuple(unique_ids),
        ).fetchall()
        return {row["id"]: self._row_to_user(row) for row in rows}

    def _categories_by_provider(
        self,
        conn: sqlite3.Connection,
        provider_id: Optional[str] = None,
    ) -> Dict[str, List[Category]]:
        query = (
            "SELECT pc.provider_id AS provider_id, c.id AS id, c.name AS name, c.icon AS icon, "
            "c.description AS description "
            "FROM provider_categories pc JOIN categories c ON c.id = pc.category_id"
        )
        params: Tuple[Any, ...] = ()
        if provider_id:
            query += " WHERE pc.provider_id = ?"
            params = (provider_id,)
        query += " ORDER BY c.name"
        result: Dict[str, List[Category]] = {}
        for row in conn.execute(query, params).fetchall():
            result.setdefault(row["provider_id"], []).append(self._row_to_category(row))
        return result

    def _provider_with_user(self, conn: sqlite3.Connection, provider_id: str) -> Optional[ProviderWithUser]:
        row = conn.execute("SELECT * FROM providers WHERE id = ?", (provider_id,)).fetchone()
        if not row:
            return None
        user_row = self._fetch_user(conn, row["user_id"])
        if not user_row:
            return None
        return ProviderWithUser(**self._row_to_provider(row).model_dump(), user=self._row_to_user(user_row))

    def _refresh_provider_rating(self, conn: sqlite3.Connection, provider_id: str) -> None:
        stats = conn.execute(
            "SELECT COUNT(*) AS total, COALESCE(SUM(rating), 0) AS points FROM reviews WHERE provider_id = ?",
            (provider_id,),
        ).fetchone()
        total = int(stats["total"] or 0)
        conn.execute(
            "UPDATE providers SET total_ratings = ?, average_rating = ? WHERE id = ?",
            (total, _round_rating(int(stats["points"]), total), provider_id),
        )

    # Users and accounts

    def create_user(
        self,
        *,
        email: str,
        password: str,
        name: str,
        phone: Optional[str] = None,
        city: Optional[str] = None,
        role: str = "client",
    ) -> User:
        normalized_email = _normalize_email(email)
        clean_name = (name or "").strip()
        if not normalized_email or not password or not clean_name:
            raise MarketplaceStoreValidationError("Email, password and name are required")
        if "@" not in normalized_email:
            raise MarketplaceStoreValidationError("Invalid email address")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise MarketplaceStoreValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if role not in USER_ROLES:
            raise MarketplaceStoreValidationError("Invalid role value. Allowed: client, provider, admin")

        password_hash = hash_password(password)
        user = User(
            id=_new_id("usr"),
            email=normalized_email,
            name=clean_name,
            phone=_clean_optional(phone),
            city=_clean_optional(city),
            role=role,  # type: ignore[arg-type]
            created_at=_utc_now(),
        )
        with self._lock:
            with self._connect() as conn:
                existing = conn.execute("SELECT id FROM users WHERE email = ?", (normalized_email,)).fetchone()
                if existing:
                    raise MarketplaceStoreConflictError("Email already registered")
                self._insert_user(conn, user, password_hash)
                conn.commit()
        logger.info("User registered user_id=%s role=%s", user.id, user.role)
        return user

    def authenticate(self, email: str, password: str) -> Optional[User]:
        normalized_email = _normalize_email(email)
        if not normalized_email or not password:
            return None
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM users WHERE email = ?", (normalized_email,)).fetchone()
        if not row or not verify_password(password, row["password_hash"]):
            return None
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._lock:
            with self._connect() as conn:
                row = self._fetch_user(conn, user_id)
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM users WHERE email = ?", (_normalize_email(email),)).fetchone()
        return self._row_to_user(row) if row else None

    def update_user(self, user_id: str, updates: Dict[str, Any]) -> User:
        changes = {key: value for key, value in updates.items() if key in USER_UPDATE_COLUMNS}
        if "email" in changes:
            email = _normalize_email(changes["email"])
            if not email or "@" not in email:
                raise MarketplaceStoreValidationError("Invalid email address")
            changes["email"] = email
        if "name" in changes:
            name = (changes["name"] or "").strip()
            if not name:
                raise MarketplaceStoreValidationError("Name cannot be empty")
            changes["name"] = name
        for key in ("phone", "city", "photo_url"):
            if key in changes:
                changes[key] = _clean_optional(changes[key])

        with self._lock:
            with self._connect() as conn:
                row = self._require_user(conn, user_id)
                if "email" in changes and changes["email"] != row["email"]:
                    clash = conn.execute(
                        "SELECT id FROM users WHERE email = ? AND id != ?",
                        (changes["email"], user_id),
                    ).fetchone()
                    if clash:
                        raise MarketplaceStoreConflictError("Email already registered")
                self._apply_update(conn, "users", user_id, changes)
                conn.commit()
                row = self._fetch_user(conn, user_id)
        return self._row_to_user(row)

    def create_password_reset(self, email: str, ttl_minutes: int = 60) -> Optional[Tuple[User, str]]:
        normalized_email = _normalize_email(email)
        if not normalized_email:
            return None
        token = create_reset_token()
        now = datetime.now(timezone.utc)
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM users WHERE email = ?", (normalized_email,)).fetchone()
                if not row:
                    return None
                # Only the newest reset link stays valid.
                conn.execute(
                    "UPDATE password_resets SET used_at = ? WHERE user_id = ? AND used_at IS NULL",
                    (now.isoformat(), row["id"]),
                )
                conn.execute(
                    """
                    INSERT INTO password_resets (token_hash, user_id, expires_at, used_at, created_at)
                    VALUES (?, ?, ?, NULL, ?)
                    """,
                    (
                        hash_reset_token(token),
                        row["id"],
                        (now + timedelta(minutes=ttl_minutes)).isoformat(),
                        now.isoformat(),
                    ),
                )
                conn.commit()
        return self._row_to_user(row), token

    def reset_password(self, token: str, new_password: str) -> User:
        if not token:
            raise MarketplaceStoreValidationError("Invalid or expired reset token")
        if len(new_password or "") < MIN_PASSWORD_LENGTH:
            raise MarketplaceStoreValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        password_hash = hash_password(new_password)
        now = datetime.now(timezone.utc)
        with self._lock:
            with self._connect() as conn:
                reset = conn.execute(
                    "SELECT * FROM password_resets WHERE token_hash = ?",
                    (hash_reset_token(token),),
                ).fetchone()
                if (
                    not reset
                    or reset["used_at"]
                    or datetime.fromisoformat(reset["expires_at"]) <= now
                ):
                    raise MarketplaceStoreValidationError("Invalid or expired reset token")
                conn.execute("UPDATE users SET password_hash = ? WHERE id = ?", (password_hash, reset["user_id"]))
                conn.execute(
                    "UPDATE password_resets SET used_at = ? WHERE token_hash = ?",
                    (now.isoformat(), reset["token_hash"]),
                )
                conn.commit()
                row = self._require_user(conn, reset["user_id"])
        logger.info("Password reset completed user_id=%s", row["id"])
        return self._row_to_user(row)

    # Categories

    def list_categories(self) -> List[Category]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute("SELECT * FROM categories ORDER BY name").fetchall()
        return [self._row_to_category(row) for row in rows]

    def create_category(
        self,
        *,
        actor_user_id: str,
        name: str,
        icon: str,
        description: Optional[str] = None,
    ) -> Category:
        clean_name = (name or "").strip()
        clean_icon = (icon or "").strip()
        if not clean_name or not clean_icon:
            raise MarketplaceStoreValidationError("Category name and icon are required")
        with self._lock:
            with self._connect() as conn:
                actor = self._require_user(conn, actor_user_id)
                if actor["role"] != "admin":
                    raise MarketplaceStorePermissionError("Only admins can manage categories")
                names = {row["name"].casefold() for row in conn.execute("SELECT name FROM categories").fetchall()}
                if clean_name.casefold() in names:
                    raise MarketplaceStoreConflictError("Category already exists")
                category = Category(
                    id=_new_id("cat"),
                    name=clean_name,
                    icon=clean_icon,
                    description=_clean_optional(description),
                )
                self._insert_category(conn, category)
                conn.commit()
        return category

    # Providers

    def create_provider(
        self,
        *,
        user_id: str,
        city: str,
        description: Optional[str] = None,
        hourly_rate: Optional[float] = None,
        whatsapp: Optional[str] = None,
        facebook: Optional[str] = None,
        category_ids: Optional[List[str]] = None,
    ) -> Provider:
        clean_city = (city or "").strip()
        if not clean_city:
            raise MarketplaceStoreValidationError("City is required")
        if hourly_rate is not None and hourly_rate < 0:
            raise MarketplaceStoreValidationError("hourly_rate must be non-negative")
        unique_category_ids = list(dict.fromkeys(category_ids or []))

        with self._lock:
            with self._connect() as conn:
                user_row = self._require_user(conn, user_id)
                existing = conn.execute("SELECT id FROM providers WHERE user_id = ?", (user_id,)).fetchone()
                if existing:
                    raise MarketplaceStoreConflictError("User already has a provider profile")
                self._assert_categories_exist(conn, unique_category_ids)
                provider = Provider(
                    id=_new_id("prv"),
                    user_id=user_id,
                    description=_clean_optional(description),
                    hourly_rate=hourly_rate,
                    city=clean_city,
                    whatsapp=_clean_optional(whatsapp),
                    facebook=_clean_optional(facebook),
                    created_at=_utc_now(),
                )
                self._insert_provider(conn, provider)
                for category_id in unique_category_ids:
                    conn.execute(
                        "INSERT OR IGNORE INTO provider_categories (provider_id, category_id) VALUES (?, ?)",
                        (provider.id, category_id),
                    )
                if user_row["role"] == "client":
                    conn.execute("UPDATE users SET role = 'provider' WHERE id = ?", (user_id,))
                conn.commit()
        logger.info("Provider profile created provider_id=%s user_id=%s", provider.id, user_id)
        return provider

    def update_provider(
        self,
        provider_id: str,
        *,
        actor_user_id: str,
        updates: Dict[str, Any],
        category_ids: Optional[List[str]] = None,
    ) -> Provider:
        changes = {key: value for key, value in updates.items() if key in PROVIDER_UPDATE_COLUMNS}
        if "city" in changes:
            clean_city = (changes["city"] or "").strip()
            if not clean_city:
                raise MarketplaceStoreValidationError("City is required")
            changes["city"] = clean_city
        if changes.get("hourly_rate") is not None and changes["hourly_rate"] < 0:
            raise MarketplaceStoreValidationError("hourly_rate must be non-negative")
        if "is_online" in changes and changes["is_online"] is None:
            changes.pop("is_online")
        for key in ("description", "whatsapp", "facebook"):
            if key in changes:
                changes[key] = _clean_optional(changes[key])

        with self._lock:
            with self._connect() as conn:
                row = self._require_provider(conn, provider_id)
                self._assert_provider_owner(row, actor_user_id)
                if category_ids is not None:
                    unique_category_ids = list(dict.fromkeys(category_ids))
                    self._assert_categories_exist(conn, unique_category_ids)
                    conn.execute("DELETE FROM provider_categories WHERE provider_id = ?", (provider_id,))
                    for category_id in unique_category_ids:
                        conn.execute(
                            "INSERT INTO provider_categories (provider_id, category_id) VALUES (?, ?)",
                            (provider_id, category_id),
                        )
                self._apply_update(conn, "providers", provider_id, changes)
                conn.commit()
                row = self._require_provider(conn, provider_id)
        return self._row_to_provider(row)

    def add_provider_category(self, provider_id: str, category_id: str, *, actor_user_id: str) -> List[Category]:
        with self._lock:
            with self._connect() as conn:
                row = self._require_provider(conn, provider_id)
                self._assert_provider_owner(row, actor_user_id)
                self._assert_categories_exist(conn, [category_id])
                conn.execute(
                    "INSERT OR IGNORE INTO provider_categories (provider_id, category_id) VALUES (?, ?)",
                    (provider_id, category_id),
                )
                conn.commit()
                return self._categories_by_provider(conn, provider_id).get(provider_id, [])

    def remove_provider_category(self, provider_id: str, category_id: str, *, actor_user_id: str) -> List[Category]:
        with self._lock:
            with self._connect() as conn:
                row = self._require_provider(conn, provider_id)
                self._assert_provider_owner(row, actor_user_id)
                conn.execute(
                    "DELETE FROM provider_categories WHERE provider_id = ? AND category_id = ?",
                    (provider_id, category_id),
                )
                conn.commit()
                return self._categories_by_provider(conn, provider_id).get(provider_id, [])

    def get_provider(self, provider_id: str) -> Optional[Provider]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM providers WHERE id = ?", (provider_id,)).fetchone()
        return self._row_to_provider(row) if row else None

    def get_provider_by_user_id(self, user_id: str) -> Optional[Provider]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM providers WHERE user_id = ?", (user_id,)).fetchone()
        return self._row_to_provider(row) if row else None

    def provider_owner_user_id(self, provider_id: str) -> Optional[str]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT user_id FROM providers WHERE id = ?", (provider_id,)).fetchone()
        return str(row["user_id"]) if row else None

    def list_providers(
        self,
        *,
        category_id: Optional[str] = None,
        city: Optional[str] = None,
        min_rating: Optional[float] = None,
        max_price: Optional[float] = None,
        search: Optional[str] = None,
        verified_only: bool = False,
        sort_by: str = "rating",
        limit: int = 50,
        offset: int = 0,
    ) -> List[ProviderSummary]:
        sort_key = (sort_by or "rating").strip().lower()
        if sort_key not in PROVIDER_SORTS:
            raise MarketplaceStoreValidationError("Invalid sort_by value. Allowed: rating, price, name")
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise MarketplaceStoreValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if offset < 0:
            raise MarketplaceStoreValidationError("offset must be non-negative")

        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM providers ORDER BY average_rating DESC, created_at ASC, rowid ASC"
                ).fetchall()
                users = self._users_by_id(conn, [row["user_id"] for row in rows])
                categories_map = self._categories_by_provider(conn)

        city_term = (city or "").strip().lower()
        search_term = (search or "").strip().lower()
        result: List[ProviderSummary] = []
        for row in rows:
            user = users.get(row["user_id"])
            if user is None:
                continue
            categories = categories_map.get(row["id"], [])
            provider = self._row_to_provider(row)
            if category_id and not any(category.id == category_id for category in categories):
                continue
            if city_term and city_term not in provider.city.lower():
                continue
            if min_rating and min_rating > 0 and provider.average_rating < min_rating:
                continue
            if max_price and max_price > 0 and (provider.hourly_rate or 0.0) > max_price:
                continue
            if verified_only and not provider.is_verified:
                continue
            if search_term:
                haystacks = [user.name, provider.description or "", *(category.name for category in categories)]
                if not any(search_term in text.lower() for text in haystacks):
                    continue
            result.append(ProviderSummary(**provider.model_dump(), user=user, categories=categories))

        if sort_key == "price":
            result.sort(key=lambda p: (p.hourly_rate is None, p.hourly_rate or 0.0))
        elif sort_key == "name":
            result.sort(key=lambda p: p.user.name.lower())
        return result[offset : offset + limit]

    def get_provider_details(self, provider_id: str) -> Optional[ProviderDetails]:
        with self._lock:
            with self._connect() as conn:
                provider = self._provider_with_user(conn, provider_id)
                if not provider:
                    return None
                categories = self._categories_by_provider(conn, provider_id).get(provider_id, [])
                service_rows = conn.execute(
                    "SELECT * FROM services WHERE provider_id = ? ORDER BY created_at, rowid",
                    (provider_id,),
                ).fetchall()
                reviews = self._reviews_with_clients(conn, provider_id)
        return ProviderDetails(
            **provider.model_dump(exclude={"user"}),
            user=provider.user,
            categories=categories,
            services=[self._row_to_service(row) for row in service_rows],
            reviews=reviews,
        )

    # Services

    def list_services(self, provider_id: str, *, active_only: bool = False) -> List[Service]:
        query = "SELECT * FROM services WHERE provider_id = ?"
        if active_only:
            query += " AND is_active = 1"
        query += " ORDER BY created_at, rowid"
        with self._lock:
            with self._connect() as conn:
                self._require_provider(conn, provider_id)
                rows = conn.execute(query, (provider_id,)).fetchall()
        return [self._row_to_service(row) for row in rows]

    def get_service(self, service_id: str) -> Optional[Service]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM services WHERE id = ?", (service_id,)).fetchone()
        return self._row_to_service(row) if row else None

    def create_service(
        self,
        *,
        actor_user_id: str,
        provider_id: str,
        name: str,
        category_id: Optional[str] = None,
        description: Optional[str] = None,
        price: Optional[float] = None,
        duration_minutes: Optional[int] = None,
        photo_url: Optional[str] = None,
        is_active: bool = True,
    ) -> Service:
        clean_name = (name or "").strip()
        if not clean_name:
            raise MarketplaceStoreValidationError("Service name is required")
        if price is not None and price < 0:
            raise MarketplaceStoreValidationError("price must be non-negative")
        if duration_minutes is not None and duration_minutes < 0:
            raise MarketplaceStoreValidationError("duration_minutes must be non-negative")

        with self._lock:
            with self._connect() as conn:
                provider_row = self._require_provider(conn, provider_id)
                self._assert_provider_owner(provider_row, actor_user_id)
                if category_id:
                    self._assert_categories_exist(conn, [category_id])
                service = Service(
                    id=_new_id("svc"),
                    provider_id=provider_id,
                    category_id=category_id or None,
                    name=clean_name,
                    description=_clean_optional(description),
                    price=price,
                    duration_minutes=duration_minutes,
                    photo_url=_clean_optional(photo_url),
                    is_active=is_active,
                    created_at=_utc_now(),
                )
                self._insert_service(conn, service)
                conn.commit()
        return service

    def update_service(self, service_id: str, *, actor_user_id: str, updates: Dict[str, Any]) -> Service:
        changes = {key: value for key, value in updates.items() if key in SERVICE_UPDATE_COLUMNS}
        if "name" in changes:
            clean_name = (changes["name"] or "").strip()
            if not clean_name:
                raise MarketplaceStoreValidationError("Service name is required")
            changes["name"] = clean_name
        if changes.get("price") is not None and changes["price"] < 0:
            raise MarketplaceStoreValidationError("price must be non-negative")
        if changes.get("duration_minutes") is not None and changes["duration_minutes"] < 0:
            raise MarketplaceStoreValidationError("duration_minutes must be non-negative")
        if "is_active" in changes and changes["is_active"] is None:
            changes.pop("is_active")
        for key in ("description", "photo_url"):
            if key in changes:
                changes[key] = _clean_optional(changes[key])

        with self._lock:
            with self._connect() as conn:
                row = self._require_service(conn, service_id)
                provider_row = self._require_provider(conn, row["provider_id"])
                self._assert_provider_owner(provider_row, actor_user_id)
                if changes.get("category_id"):
                    self._assert_categories_exist(conn, [changes["category_id"]])
                self._apply_update(conn, "services", service_id, changes)
                conn.commit()
                row = self._require_service(conn, service_id)
        return self._row_to_service(row)

    def delete_service(self, service_id: str, *, actor_user_id: str) -> None:
        with self._lock:
            with self._connect() as conn:
                row = self._require_service(conn, service_id)
                provider_row = self._require_provider(conn, row["provider_id"])
                self._assert_provider_owner(provider_row, actor_user_id)
                conn.execute("DELETE FROM services WHERE id = ?", (service_id,))
                conn.commit()

    # Reviews

    def _reviews_with_clients(self, conn: sqlite3.Connection, provider_id: str) -> List[ReviewWithClient]:
        rows = conn.execute(
            "SELECT * FROM reviews WHERE provider_id = ? ORDER BY created_at DESC, rowid DESC",
            (provider_id,),
        ).fetchall()
        clients = self._users_by_id(conn, [row["client_id"] for row in rows])
        return [
            ReviewWithClient(**self._row_to_review(row).model_dump(), client=clients[row["client_id"]])
            for row in rows
            if row["client_id"] in clients
        ]

    def list_reviews(self, provider_id: str) -> List[ReviewWithClient]:
        with self._lock:
            with self._connect() as conn:
                self._require_provider(conn, provider_id)
                return self._reviews_with_clients(conn, provider_id)

    def create_review(
        self,
        *,
        client_id: str,
        provider_id: str,
        rating: int,
        comment: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> Review:
        if rating < 1 or rating > 5:
            raise MarketplaceStoreValidationError("rating must be between 1 and 5")

        with self._lock:
            with self._connect() as conn:
                self._require_user(conn, client_id)
                provider_row = self._require_provider(conn, provider_id)
                if provider_row["user_id"] == client_id:
                    raise MarketplaceStorePermissionError("Providers cannot review themselves")
                if order_id:
                    order = conn.execute("SELECT * FROM service_orders WHERE id = ?", (order_id,)).fetchone()
                    if not order or order["client_id"] != client_id or order["provider_id"] != provider_id:
                        raise MarketplaceStoreValidationError("Order does not match this review")
                    if order["status"] != "completed":
                        raise MarketplaceStoreValidationError("Only completed orders can be reviewed")
                    already = conn.execute("SELECT id FROM reviews WHERE order_id = ?", (order_id,)).fetchone()
                    if already:
                        raise MarketplaceStoreConflictError("Order already reviewed")
                review = Review(
                    id=_new_id("rev"),
                    provider_id=provider_id,
                    client_id=client_id,
                    order_id=order_id or None,
                    rating=rating,
                    comment=_clean_optional(comment),
                    created_at=_utc_now(),
                )
                self._insert_review(conn, review)
                self._refresh_provider_rating(conn, provider_id)
                conn.commit()
        return review

    # Conversations and messages

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
        return self._row_to_conversation(row) if row else None

    def get_or_create_conversation(self, *, client_id: str, provider_id: str) -> Conversation:
        with self._lock:
            with self._connect() as conn:
                self._require_user(conn, client_id)
                provider_row = self._require_provider(conn, provider_id)
                if provider_row["user_id"] == client_id:
                    raise MarketplaceStoreValidationError("Providers cannot start a conversation with themselves")
                existing = conn.execute(
                    "SELECT * FROM conversations WHERE client_id = ? AND provider_id = ?",
                    (client_id, provider_id),
                ).fetchone()
                if existing:
                    return self._row_to_conversation(existing)
                now = _utc_now()
                conversation = Conversation(
                    id=_new_id("conv"),
                    client_id=client_id,
                    provider_id=provider_id,
                    last_message_at=now,
                    created_at=now,
                )
                conn.execute(
                    """
                    INSERT INTO conversations (id, client_id, provider_id, last_message_at, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        conversation.id,
                        conversation.client_id,
                        conversation.provider_id,
                        conversation.last_message_at,
                        conversation.created_at,
                    ),
                )
                conn.commit()
        return conversation

    def list_conversations(self, user_id: str) -> List[ConversationSummary]:
        with self._lock:
            with self._connect() as conn:
                own_provider = conn.execute("SELECT id FROM providers WHERE user_id = ?", (user_id,)).fetchone()
                if own_provider:
                    rows = conn.execute(
                        """
                        SELECT * FROM conversations
                        WHERE client_id = ? OR provider_id = ?
                        ORDER BY last_message_at DESC, rowid DESC
                        """,
                        (user_id, own_provider["id"]),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM conversations WHERE client_id = ? ORDER BY last_message_at DESC, rowid DESC",
                        (user_id,),
                    ).fetchall()

                summaries: List[ConversationSummary] = []
                for row in rows:
                    client_row = self._fetch_user(conn, row["client_id"])
                    provider = self._provider_with_user(conn, row["provider_id"])
                    if not client_row or not provider:
                        continue
                    last_row = conn.execute(
                        """
                        SELECT * FROM messages WHERE conversation_id = ?
                        ORDER BY created_at DESC, rowid DESC LIMIT 1
                        """,
                        (row["id"],),
                    ).fetchone()
                    unread = conn.execute(
                        """
                        SELECT COUNT(*) AS unread FROM messages
                        WHERE conversation_id = ? AND sender_id != ? AND is_read = 0
                        """,
                        (row["id"], user_id),
                    ).fetchone()
                    summaries.append(
                        ConversationSummary(
                            **self._row_to_conversation(row).model_dump(),
                            client=self._row_to_user(client_row),
                            provider=provider,
                            last_message=self._row_to_message(last_row) if last_row else None,
                            unread_count=int(unread["unread"] or 0),
                        )
                    )
        return summaries

    def list_messages(self, conversation_id: str, *, after: Optional[str] = None) -> List[MessageWithSender]:
        query = "SELECT * FROM messages WHERE conversation_id = ?"
        params: List[Any] = [conversation_id]
        if after:
            query += " AND created_at > ?"
            params.append(_parse_timestamp(after, field="after"))
        query += " ORDER BY created_at ASC, rowid ASC"

        with self._lock:
            with self._connect() as conn:
                self._require_conversation(conn, conversation_id)
                rows = conn.execute(query, tuple(params)).fetchall()
                senders = self._users_by_id(conn, [row["sender_id"] for row in rows])
        return [
            MessageWithSender(**self._row_to_message(row).model_dump(), sender=senders[row["sender_id"]])
            for row in rows
            if row["sender_id"] in senders
        ]

    def create_message(self, *, conversation_id: str, sender_id: str, content: str) -> Tuple[Message, str]:
        """Store a message and return it with the user id of the other participant."""
        text = (content or "").strip()
        if not text:
            raise MarketplaceStoreValidationError("Message content is required")
        if len(text) > MAX_MESSAGE_LENGTH:
            raise MarketplaceStoreValidationError(f"Message content must be at most {MAX_MESSAGE_LENGTH} characters")

        with self._lock:
            with self._connect() as conn:
                conversation = self._require_conversation(conn, conversation_id)
                provider_row = self._require_provider(conn, conversation["provider_id"])
                client_id = conversation["client_id"]
                provider_user_id = provider_row["user_id"]
                if sender_id not in {client_id, provider_user_id}:
                    raise MarketplaceStorePermissionError("Sender is not part of this conversation")
                message = Message(
                    id=_new_id("msg"),
                    conversation_id=conversation_id,
                    sender_id=sender_id,
                    content=text,
                    is_read=False,
                    created_at=_utc_now(),
                )
                conn.execute(
                    """
                    INSERT INTO messages (id, conversation_id, sender_id, content, is_read, created_at)
                    VALUES (?, ?, ?, ?, 0, ?)
                    """,
                    (message.id, message.conversation_id, message.sender_id, message.content, message.created_at),
                )
                conn.execute(
                    "UPDATE conversations SET last_message_at = ? WHERE id = ?",
                    (message.created_at, conversation_id),
                )
                conn.commit()
        recipient = provider_user_id if sender_id == client_id else client_id
        return message, recipient

    def mark_messages_read(self, conversation_id: str, *, user_id: str) -> int:
        with self._lock:
            with self._connect() as conn:
                conversation = self._require_conversation(conn, conversation_id)
                provider_row = self._require_provider(conn, conversation["provider_id"])
                if user_id not in {conversation["client_id"], provider_row["user_id"]}:
                    raise MarketplaceStorePermissionError("User is not part of this conversation")
                cursor = conn.execute(
                    """
                    UPDATE messages SET is_read = 1
                    WHERE conversation_id = ? AND sender_id != ? AND is_read = 0
                    """,
                    (conversation_id, user_id),
                )
                conn.commit()
        return int(cursor.rowcount)

    # Favorites

    def list_favorites(self, user_id: str) -> List[FavoriteWithProvider]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM favorites WHERE user_id = ? ORDER BY created_at DESC, rowid DESC",
                    (user_id,),
                ).fetchall()
                result: List[FavoriteWithProvider] = []
                for row in rows:
                    provider = self._provider_with_user(conn, row["provider_id"])
                    if provider:
                        result.append(FavoriteWithProvider(**self._row_to_favorite(row).model_dump(), provider=provider))
        return result

    def add_favorite(self, *, user_id: str, provider_id: str) -> Favorite:
        with self._lock:
            with self._connect() as conn:
                self._require_user(conn, user_id)
                self._require_provider(conn, provider_id)
                existing = conn.execute(
                    "SELECT * FROM favorites WHERE user_id = ? AND provider_id = ?",
                    (user_id, provider_id),
                ).fetchone()
                if existing:
                    return self._row_to_favorite(existing)
                favorite = Favorite(
                    id=_new_id("fav"),
                    user_id=user_id,
                    provider_id=provider_id,
                    created_at=_utc_now(),
                )
                conn.execute(
                    "INSERT INTO favorites (id, user_id, provider_id, created_at) VALUES (?, ?, ?, ?)",
                    (favorite.id, favorite.user_id, favorite.provider_id, favorite.created_at),
                )
                conn.commit()
        return favorite

    def remove_favorite(self, *, user_id: str, provider_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM favorites WHERE user_id = ? AND provider_id = ?",
                    (user_id, provider_id),
                )
                conn.commit()
        return cursor.rowcount > 0

    def is_favorite(self, *, user_id: str, provider_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT id FROM favorites WHERE user_id = ? AND provider_id = ?",
                    (user_id, provider_id),
                ).fetchone()
        return row is not None

    # Service orders

    def create_order(
        self,
        *,
        client_id: str,
        provider_id: str,
        service_id: Optional[str] = None,
        scheduled_date: Optional[str] = None,
        price: Optional[float] = None,
        notes: Optional[str] = None,
    ) -> ServiceOrder:
        if price is not None and price < 0:
            raise MarketplaceStoreValidationError("price must be non-negative")
        normalized_schedule = (
            _parse_timestamp(scheduled_date, field="scheduled_date") if scheduled_date else None
        )

        with self._lock:
            with self._connect() as conn:
                self._require_user(conn, client_id)
                provider_row = self._require_provider(conn, provider_id)
                if provider_row["user_id"] == client_id:
                    raise MarketplaceStoreValidationError("Providers cannot order their own services")
                order_price = price
                if service_id:
                    service_row = conn.execute("SELECT * FROM services WHERE id = ?", (service_id,)).fetchone()
                    if not service_row or service_row["provider_id"] != provider_id:
                        raise MarketplaceStoreValidationError("Service does not belong to this provider")
                    if not service_row["is_active"]:
                        raise MarketplaceStoreValidationError("Service is not currently offered")
                    if order_price is None and service_row["price"] is not None:
                        order_price = float(service_row["price"])
                now = _utc_now()
                order = ServiceOrder(
                    id=_new_id("ord"),
                    client_id=client_id,
                    provider_id=provider_id,
                    service_id=service_id or None,
                    status="pending",
                    scheduled_date=normalized_schedule,
                    price=order_price,
                    notes=_clean_optional(notes),
                    created_at=now,
                    updated_at=now,
                )
                conn.execute(
                    """
                    INSERT INTO service_orders (
                        id, client_id, provider_id, service_id, status, scheduled_date, completed_date,
                        price, notes, client_notes, provider_notes, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, NULL, ?, ?, NULL, NULL, ?, ?)
                    """,
                    (
                        order.id,
                        order.client_id,
                        order.provider_id,
                        order.service_id,
                        order.status,
                        order.scheduled_date,
                        order.price,
                        order.notes,
                        order.created_at,
                        order.updated_at,
                    ),
                )
                self._insert_order_history(conn, order.id, client_id, "none", order.status, "order requested")
                conn.commit()
        logger.info("Order created order_id=%s provider_id=%s", order.id, provider_id)
        return order

    def get_order(self, order_id: str) -> Optional[ServiceOrder]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM service_orders WHERE id = ?", (order_id,)).fetchone()
        return self._row_to_order(row) if row else None

    def list_orders(self, user_id: str, role: Optional[str] = None) -> List[ServiceOrderView]:
        normalized_role = role.strip().lower() if role else None
        if normalized_role not in ORDER_ROLES:
            raise MarketplaceStoreValidationError("Invalid role value. Allowed: all, client, provider")

        with self._lock:
            with self._connect() as conn:
                query = "SELECT o.* FROM service_orders o"
                params: List[Any] = []
                if normalized_role == "provider":
                    query += " JOIN providers p ON p.id = o.provider_id WHERE p.user_id = ?"
                    params.append(user_id)
                elif normalized_role == "client":
                    query += " WHERE o.client_id = ?"
                    params.append(user_id)
                else:
                    query += " LEFT JOIN providers p ON p.id = o.provider_id WHERE o.client_id = ? OR p.user_id = ?"
                    params.extend([user_id, user_id])
                query += " ORDER BY o.created_at DESC, o.rowid DESC"
                rows = conn.execute(query, tuple(params)).fetchall()

                service_ids = list({row["service_id"] for row in rows if row["service_id"]})
                service_names: Dict[str, str] = {}
                if service_ids:
                    for service_row in conn.execute(
                        f"SELECT id, name FROM services WHERE id IN ({_placeholders(len(service_ids))})",
                        tuple(service_ids),
                    ).fetchall():
                        service_names[service_row["id"]] = service_row["name"]

                provider_ids = list({row["provider_id"] for row in rows})
                provider_names: Dict[str, str] = {}
                if provider_ids:
                    for name_row in conn.execute(
                        f"""
                        SELECT p.id AS provider_id, u.name AS name
                        FROM providers p JOIN users u ON u.id = p.user_id
                        WHERE p.id IN ({_placeholders(len(provider_ids))})
                        """,
                        tuple(provider_ids),
                    ).fetchall():
                        provider_names[name_row["provider_id"]] = name_row["name"]

        return [
            ServiceOrderView(
                **self._row_to_order(row).model_dump(),
                service_name=service_names.get(row["service_id"] or ""),
                provider_name=provider_names.get(row["provider_id"]),
            )
            for row in rows
        ]

    def update_order_status(
        self,
        order_id: str,
        *,
        actor_user_id: str,
        status: str,
        note: str = "",
    ) -> ServiceOrder:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM service_orders WHERE id = ?", (order_id,)).fetchone()
                if not row:
                    raise MarketplaceStoreNotFoundError("Order not found")

                current_status = str(row["status"])
                if current_status in ORDER_TERMINAL_STATUSES:
                    raise MarketplaceStoreConflictError("Order is already closed")
                if status not in ORDER_TRANSITIONS.get(current_status, set()):
                    raise MarketplaceStoreValidationError(f"Invalid status transition: {current_status} -> {status}")

                provider_row = conn.execute(
                    "SELECT user_id FROM providers WHERE id = ?",
                    (row["provider_id"],),
                ).fetchone()
                provider_user_id = provider_row["user_id"] if provider_row else ""
                client_id = row["client_id"]
                if status in PROVIDER_ONLY_ORDER_STATUSES:
                    if actor_user_id != provider_user_id:
                        raise MarketplaceStorePermissionError("Only the provider can apply this status")
                elif actor_user_id not in {client_id, provider_user_id}:
                    raise MarketplaceStorePermissionError("Only the client or provider can cancel this order")

                now = _utc_now()
                changes: Dict[str, Any] = {"status": status, "updated_at": now}
                if status == "completed":
                    changes["completed_date"] = now
                clean_note = (note or "").strip()
                if clean_note:
                    notes_column = "provider_notes" if actor_user_id == provider_user_id else "client_notes"
                    changes[notes_column] = clean_note
                self._apply_update(conn, "service_orders", order_id, changes)
                self._insert_order_history(conn, order_id, actor_user_id, current_status, status, clean_note)
                conn.commit()
                row = conn.execute("SELECT * FROM service_orders WHERE id = ?", (order_id,)).fetchone()
        logger.info("Order status changed order_id=%s %s -> %s", order_id, current_status, status)
        return self._row_to_order(row)


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes"}


default_db = str(Path(__file__).resolve().parents[2] / "data" / "marketplace.sqlite3")
marketplace_store = MarketplaceStore(
    db_path=os.getenv("MARKETPLACE_DB_PATH", default_db),
    seed=_env_flag("MARKETPLACE_SEED", True),
)
