import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, Text
from sqlalchemy.orm import relationship

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_id() -> str:
    return str(uuid.uuid4())


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(Text, primary_key=True, default=new_id)
    email = Column(Text, nullable=False, unique=True, index=True)
    full_name = Column(Text, nullable=True)
    role = Column(Text, nullable=False, default="user")
    credits = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def display_name(self) -> str:
        return self.full_name or self.email.split("@")[0]


class AuthSession(Base):
    __tablename__ = "auth_sessions"

    id = Column(Integer, primary_key=True)
    profile_id = Column(Text, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    profile = relationship("Profile", lazy="selectin")

    access_token = Column(Text, nullable=False, unique=True)
    refresh_token = Column(Text, nullable=False, unique=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    refresh_expires_at = Column(DateTime(timezone=True), nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class VerificationCode(Base):
    __tablename__ = "verification_codes"

    id = Column(Integer, primary_key=True)
    email = Column(Text, nullable=False, unique=True)
    code = Column(Text, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)


class Deal(Base):
    __tablename__ = "deals"

    id = Column(Text, primary_key=True, default=new_id)
    user_id = Column(Text, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)

    file_path = Column(Text, nullable=False)
    zip_code = Column(Text, nullable=True)
    extracted_fields = Column(JSON, nullable=True)
    preview_data = Column(JSON, nullable=True)

    status = Column(Text, nullable=False, default="uploaded")
    paid = Column(Boolean, nullable=False, default=False)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    amount_cents = Column(Integer, nullable=True)
    stripe_session_id = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Report(Base):
    __tablename__ = "reports"

    id = Column(Text, primary_key=True, default=new_id)
    deal_id = Column(Text, ForeignKey("deals.id", ondelete="CASCADE"), nullable=False, unique=True)

    score = Column(Integer, nullable=False)
    category = Column(Text, nullable=False)
    red_flags = Column(JSON, nullable=False, default=list)
    target_otd_range = Column(JSON, nullable=True)
    negotiation_script = Column(JSON, nullable=True)
    summary = Column(Text, nullable=True)

    degraded = Column(Boolean, nullable=False, default=False)
    degraded_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
