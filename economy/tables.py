from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    true,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    pass


class GemBalance(Base):
    __tablename__ = "gem_balances"
    __table_args__ = (
        CheckConstraint("spendable >= 0", name="ck_gem_balances_spendable"),
        CheckConstraint("cashable >= 0", name="ck_gem_balances_cashable"),
        CheckConstraint("promo >= 0", name="ck_gem_balances_promo"),
        CheckConstraint("pending_referral >= 0", name="ck_gem_balances_pending_referral"),
    )

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    spendable: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cashable: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    promo: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    pending_referral: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)


class GemTransaction(Base):
    """Append-only. `source_wallet` is only set when gems move between wallets."""

    __tablename__ = "gem_transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_gem_transactions_amount"),
        Index("ix_gem_transactions_user_created", "user_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    wallet: Mapped[str] = mapped_column(String(32), nullable=False)
    source_wallet: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)


class Referral(Base):
    __tablename__ = "referrals"
    __table_args__ = (
        UniqueConstraint("referrer_user_id", "referred_user_id", name="uq_referrals_pair"),
        CheckConstraint(
            "status IN ('clicked', 'signed_up', 'active', 'rewarded')",
            name="ck_referrals_status",
        ),
        Index("ix_referrals_vesting", "referred_user_id", "vested", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    referrer_user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    referred_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    referral_code: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="clicked", nullable=False)
    gems_awarded_referrer: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    gems_awarded_referred: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    vested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    vested_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    vested_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    first_purchase_rewarded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    subscription_rewarded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)


class UserReport(Base):
    __tablename__ = "user_reports"
    __table_args__ = (
        CheckConstraint(
            "category IN ('inappropriate', 'harassment', 'underage', 'spam', 'other')",
            name="ck_user_reports_category",
        ),
        Index("ix_user_reports_reported_created", "reported_id", "created_at"),
        Index("ix_user_reports_pair_created", "reporter_id", "reported_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    reporter_id: Mapped[str] = mapped_column(String(64), nullable=False)
    reported_id: Mapped[str] = mapped_column(String(64), nullable=False)
    room_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)


class UserSuspension(Base):
    __tablename__ = "user_suspensions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    suspended_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)


# one active suspension per user
Index(
    "uq_user_suspensions_active",
    UserSuspension.user_id,
    unique=True,
    sqlite_where=UserSuspension.is_active == true(),
    postgresql_where=UserSuspension.is_active == true(),
)


class ReportCooldown(Base):
    """Last accepted report per (reporter, reported) pair; claimed before a report is stored."""

    __tablename__ = "report_cooldowns"

    reporter_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    reported_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    last_reported_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
