import uuid

from sqlalchemy import (
    Column, Integer, String, Text, Float, Boolean, ForeignKey, Index,
    DateTime,
)
from sqlalchemy.orm import relationship
from db.database import Base
from utils.datetime_utils import utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(320), unique=True, nullable=False)
    password_hash = Column(String(255))
    first_name = Column(String(50))
    last_name = Column(String(50))
    email_verified = Column(Boolean, nullable=False, default=False)
    plan = Column(String(10), nullable=False, default="FREE")  # FREE | PRO
    subscription_status = Column(String(20))  # active | trialing | canceled | past_due
    current_period_end = Column(DateTime)
    stripe_customer_id = Column(String(255), unique=True)
    stripe_subscription_id = Column(String(255))
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    meals = relationship("MealAnalysis", back_populates="user", cascade="all, delete-orphan")
    refresh_tokens = relationship("RefreshToken", back_populates="user", cascade="all, delete-orphan")
    verification_tokens = relationship("EmailVerificationToken", back_populates="user", cascade="all, delete-orphan")
    password_reset_tokens = relationship("PasswordResetToken", back_populates="user", cascade="all, delete-orphan")
    usage_events = relationship("Usage", back_populates="user", cascade="all, delete-orphan")


class MealAnalysis(Base):
    __tablename__ = "meal_analyses"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    blob_name = Column(String(500), nullable=False)
    blob_url = Column(Text, nullable=False)  # never carries a signature
    blob_hash = Column(String(64))  # sha256 of blob_name; cache key, not scoped to a user
    request_id = Column(String(128), nullable=False)
    ai_model = Column(String(100), nullable=False)
    ai_response_raw = Column(Text, nullable=False)  # JSON, immutable after insert
    total_protein = Column(Float, nullable=False, default=0.0)
    total_carbs = Column(Float)
    total_fat = Column(Float)
    confidence = Column(String(20), nullable=False)
    notes = Column(Text)
    user_corrections = Column(Text)  # JSON
    share_id = Column(String(10), unique=True, nullable=False)
    is_public = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="meals")
    foods = relationship(
        "Food",
        back_populates="meal",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Food.display_order",
    )

    __table_args__ = (
        Index("idx_meal_analyses_user_created", "user_id", "created_at"),
        Index("idx_meal_analyses_blob_hash", "blob_hash", "created_at"),
        Index("idx_meal_analyses_share_id", "share_id"),
    )


class Food(Base):
    __tablename__ = "foods"

    id = Column(String(36), primary_key=True, default=_uuid)
    meal_analysis_id = Column(String(36), ForeignKey("meal_analyses.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(200), nullable=False)
    portion = Column(String(100), nullable=False)
    protein = Column(Float, nullable=False, default=0.0)
    carbs = Column(Float)
    fat = Column(Float)
    display_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)

    meal = relationship("MealAnalysis", back_populates="foods")

    __table_args__ = (
        Index("idx_foods_meal", "meal_analysis_id"),
    )


class RefreshToken(Base):
    __tablename__ = "refresh_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token_hash = Column(String(64), unique=True, nullable=False)  # raw token is never stored
    device_info = Column(String(255))
    ip_address = Column(String(45))
    expires_at = Column(DateTime, nullable=False)
    revoked_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", back_populates="refresh_tokens")

    __table_args__ = (
        Index("idx_refresh_tokens_user", "user_id"),
        Index("idx_refresh_tokens_expires", "expires_at"),
    )


class EmailVerificationToken(Base):
    __tablename__ = "email_verification_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token_hash = Column(String(64), unique=True, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    used_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", back_populates="verification_tokens")


class PasswordResetToken(Base):
    __tablename__ = "password_reset_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token_hash = Column(String(64), unique=True, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    used_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", back_populates="password_reset_tokens")


class Usage(Base):
    __tablename__ = "usage_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    usage_type = Column(String(30), nullable=False, default="MEAL_ANALYSIS")
    meal_id = Column(String(36))
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", back_populates="usage_events")

    __table_args__ = (
        Index("idx_usage_user_type_created", "user_id", "usage_type", "created_at"),
    )


class SubscriptionEvent(Base):
    __tablename__ = "subscription_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))
    event_type = Column(String(100), nullable=False)
    stripe_event_id = Column(String(255), unique=True, nullable=False)
    payload_json = Column(Text)
    created_at = Column(DateTime, default=utcnow)


class RateLimitAuditEvent(Base):
    __tablename__ = "rate_limit_audit_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))
    endpoint = Column(Text, nullable=False)
    scope_key = Column(Text, nullable=False)  # hashed, never the raw email
    ip_address = Column(Text)
    blocked = Column(Boolean, nullable=False, default=False)
    retry_after_seconds = Column(Integer)
    details_json = Column(Text)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("idx_rate_limit_audit_endpoint_created", "endpoint", "created_at"),
    )
