from typing import Dict, Literal, Optional

from pydantic import BaseModel, Field

UserRole = Literal["client", "provider", "admin"]
OrderStatus = Literal["pending", "confirmed", "declined", "in_progress", "completed", "cancelled"]


class User(BaseModel):
    id: str
    email: str
    name: str
    phone: Optional[str] = None
    city: Optional[str] = None
    photo_url: Optional[str] = None
    role: UserRole = "client"
    created_at: str


class UserUpdateRequest(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    city: Optional[str] = None
    photo_url: Optional[str] = None


class Category(BaseModel):
    id: str
    name: str
    icon: str
    description: Optional[str] = None


class CategoryCreateRequest(BaseModel):
    actor_user_id: str
    name: str
    icon: str
    description: Optional[str] = None


class Provider(BaseModel):
    id: str
    user_id: str
    description: Optional[str] = None
    hourly_rate: Optional[float] = None
    city: str
    whatsapp: Optional[str] = None
    facebook: Optional[str] = None
    is_verified: bool = False
    is_online: bool = False
    total_ratings: int = 0
    average_rating: float = 0.0
    created_at: str


class ProviderWithUser(Provider):
    user: User


class ProviderSummary(ProviderWithUser):
    categories: list[Category] = Field(default_factory=list)


class ProviderCreateRequest(BaseModel):
    user_id: str
    city: str
    description: Optional[str] = None
    hourly_rate: Optional[float] = Field(default=None, ge=0)
    whatsapp: Optional[str] = None
    facebook: Optional[str] = None
    category_ids: list[str] = Field(default_factory=list)


class ProviderUpdateRequest(BaseModel):
    actor_user_id: str
    city: Optional[str] = None
    description: Optional[str] = None
    hourly_rate: Optional[float] = Field(default=None, ge=0)
    whatsapp: Optional[str] = None
    facebook: Optional[str] = None
    is_online: Optional[bool] = None
    category_ids: Optional[list[str]] = None


class ProviderCategoryRequest(BaseModel):
    actor_user_id: str


class Service(BaseModel):
    id: str
    provider_id: str
    category_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    price: Optional[float] = None
    duration_minutes: Optional[int] = None
    photo_url: Optional[str] = None
    is_active: bool = True
    created_at: str


class ServiceCreateRequest(BaseModel):
    actor_user_id: str
    provider_id: str
    name: str
    category_id: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    duration_minutes: Optional[int] = Field(default=None, ge=0)
    photo_url: Optional[str] = None
    is_active: bool = True


class ServiceUpdateRequest(BaseModel):
    actor_user_id: str
    name: Optional[str] = None
    category_id: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    duration_minutes: Optional[int] = Field(default=None, ge=0)
    photo_url: Optional[str] = None
    is_active: Optional[bool] = None


class Review(BaseModel):
    id: str
    provider_id: str
    client_id: str
    order_id: Optional[str] = None
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = None
    created_at: str


class ReviewWithClient(Review):
    client: User


class ReviewCreateRequest(BaseModel):
    client_id: str
    provider_id: str
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = None
    order_id: Optional[str] = None


class ProviderDetails(ProviderSummary):
    services: list[Service] = Field(default_factory=list)
    reviews: list[ReviewWithClient] = Field(default_factory=list)


class Message(BaseModel):
    id: str
    conversation_id: str
    sender_id: str
    content: str
    is_read: bool = False
    created_at: str


class MessageWithSender(Message):
    sender: User


class MessageCreateRequest(BaseModel):
    conversation_id: str
    sender_id: str
    content: str


class Conversation(BaseModel):
    id: str
    client_id: str
    provider_id: str
    last_message_at: str
    created_at: str


class ConversationSummary(Conversation):
    client: User
    provider: ProviderWithUser
    last_message: Optional[Message] = None
    unread_count: int = 0


class ConversationCreateRequest(BaseModel):
    client_id: str
    provider_id: str


class MarkReadRequest(BaseModel):
    user_id: str


class Favorite(BaseModel):
    id: str
    user_id: str
    provider_id: str
    created_at: str


class FavoriteWithProvider(Favorite):
    provider: ProviderWithUser


class FavoriteRequest(BaseModel):
    user_id: str
    provider_id: str


class FavoriteCheckResponse(BaseModel):
    is_favorite: bool


class ServiceOrder(BaseModel):
    id: str
    client_id: str
    provider_id: str
    service_id: Optional[str] = None
    status: OrderStatus = "pending"
    scheduled_date: Optional[str] = None
    completed_date: Optional[str] = None
    price: Optional[float] = None
    notes: Optional[str] = None
    client_notes: Optional[str] = None
    provider_notes: Optional[str] = None
    created_at: str
    updated_at: str


class ServiceOrderView(ServiceOrder):
    service_name: Optional[str] = None
    provider_name: Optional[str] = None


class OrderCreateRequest(BaseModel):
    client_id: str
    provider_id: str
    service_id: Optional[str] = None
    scheduled_date: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    notes: Optional[str] = None


class OrderStatusUpdateRequest(BaseModel):
    actor_user_id: str
    status: Literal["confirmed", "declined", "in_progress", "completed", "cancelled"]
    note: str = ""


class RegisterRequest(BaseModel):
    email: str = ""
    password: str = ""
    name: str = ""
    phone: Optional[str] = None
    city: Optional[str] = None
    role: Literal["client", "provider"] = "client"


class LoginRequest(BaseModel):
    email: str = ""
    password: str = ""


class AuthResponse(BaseModel):
    user: User
    provider: Optional[Provider] = None
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    expires_at: str


class AuthMeResponse(BaseModel):
    user: User
    provider: Optional[Provider] = None


class ForgotPasswordRequest(BaseModel):
    email: str


class ResetPasswordRequest(BaseModel):
    token: str
    password: str


class MessageResponse(BaseModel):
    message: str


class SuccessResponse(BaseModel):
    success: bool = True
    updated: Optional[int] = None


class DeviceTokenRegisterRequest(BaseModel):
    user_id: str
    device_token: str
    platform: Literal["android", "ios", "web"] = "android"


NotificationCategory = Literal["order", "message", "account", "system"]


class NotificationRecord(BaseModel):
    id: str
    user_id: str
    title: str
    body: str
    category: NotificationCategory = "system"
    read: bool = False
    created_at: str
    deep_link: Optional[str] = None


class UnreadCountResponse(BaseModel):
    total: int
    by_category: Dict[str, int]
