from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Integer,
    String,
    Text,
    func,
    Index,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (SQLite in local runs and tests).
JSONType = JSON().with_variant(JSONB, "postgresql")


class Base(DeclarativeBase):
    pass


class PlanConfig(Base):
    __tablename__ = "plan_configs"

    # Stored overrides for built-in plan tiers; null limits mean unlimited.
    plan: Mapped[str] = mapped_column(String, primary_key=True)
    title: Mapped[str] = mapped_column(String)
    price_kopecks_monthly: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    projects_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    seats_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tasks_weekly_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    public_tasks_monthly_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    storage_included_gb: Mapped[int | None] = mapped_column(Integer, nullable=True)
    storage_overage_kopecks_per_gb_month: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    storage_package_gb: Mapped[int | None] = mapped_column(Integer, nullable=True)
    storage_package_kopecks_monthly: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    features: Mapped[list[str] | None] = mapped_column(JSONType, default=list)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class BillingConfig(Base):
    __tablename__ = "billing_config"

    # Single-row table; id is always 1.
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    task_publish_cost_kopecks: Mapped[int] = mapped_column(BigInteger)
    bid_cost_kopecks: Mapped[int] = mapped_column(BigInteger)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    org_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    plan: Mapped[str] = mapped_column(String, default="basic")
    # active | trial | suspended | past_due | inactive
    status: Mapped[str] = mapped_column(String, default="active")
    # Per-organization overrides; null means "use the plan default".
    seats: Mapped[int | None] = mapped_column(Integer, nullable=True)
    projects_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    public_tasks_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tasks_weekly_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    storage_limit_gb: Mapped[int | None] = mapped_column(Integer, nullable=True)
    period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    grace_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    grace_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class BillingUsage(Base):
    __tablename__ = "billing_usage"
    __table_args__ = (
        UniqueConstraint("org_id", "period", name="uq_billing_usage_org_period"),
    )

    # One counter row per organization and period key (YYYY-MM or YYYY-Www).
    id: Mapped[str] = mapped_column(String, primary_key=True)
    org_id: Mapped[str] = mapped_column(String, index=True)
    period: Mapped[str] = mapped_column(String)
    projects_used: Mapped[int] = mapped_column(Integer, default=0)
    publications_used: Mapped[int] = mapped_column(Integer, default=0)
    tasks_used: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class StorageUsage(Base):
    __tablename__ = "storage_usage"
    __table_args__ = (CheckConstraint("bytes_used >= 0", name="ck_storage_usage_bytes_non_negative"),)

    org_id: Mapped[str] = mapped_column(String, primary_key=True)
    bytes_used: Mapped[int] = mapped_column(BigInteger, default=0)
    read_only: Mapped[bool] = mapped_column(Boolean, default=False)
    read_only_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class StorageBilling(Base):
    __tablename__ = "storage_billing"
    __table_args__ = (
        UniqueConstraint("org_id", "hour_key", name="uq_storage_billing_org_hour"),
    )

    # Append-only; one row per organization and charged hour.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    org_id: Mapped[str] = mapped_column(String, index=True)
    period: Mapped[str] = mapped_column(String, index=True)
    hour_key: Mapped[str] = mapped_column(String)
    bytes_snapshot: Mapped[int] = mapped_column(BigInteger)
    gb_billed: Mapped[int] = mapped_column(Integer)
    amount_kopecks: Mapped[int] = mapped_column(BigInteger)
    charged_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class StoragePackage(Base):
    __tablename__ = "storage_packages"
    __table_args__ = (Index("ix_storage_packages_org_status", "org_id", "status"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    org_id: Mapped[str] = mapped_column(String)
    package_gb: Mapped[int] = mapped_column(Integer)
    price_kopecks_monthly: Mapped[int] = mapped_column(BigInteger)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    # active | expired | canceled
    status: Mapped[str] = mapped_column(String, default="active")
    auto_renew: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class OrgWallet(Base):
    __tablename__ = "org_wallets"
    __table_args__ = (CheckConstraint("balance_kopecks >= 0", name="ck_org_wallets_balance_non_negative"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    org_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    balance_kopecks: Mapped[int] = mapped_column(BigInteger, default=0)
    currency: Mapped[str] = mapped_column(String, default="RUB")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class OrgWalletTransaction(Base):
    __tablename__ = "org_wallet_transactions"

    # Immutable ledger; balance_after_kopecks is the balance right after this entry.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    wallet_id: Mapped[str] = mapped_column(String, index=True)
    org_id: Mapped[str] = mapped_column(String, index=True)
    amount_kopecks: Mapped[int] = mapped_column(BigInteger)
    # credit | debit
    type: Mapped[str] = mapped_column(String)
    # manual | subscription | storage_overage | storage_package | publication
    source: Mapped[str] = mapped_column(String)
    balance_after_kopecks: Mapped[int] = mapped_column(BigInteger)
    meta: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Wallet(Base):
    __tablename__ = "wallets"
    __table_args__ = (
        CheckConstraint("balance_kopecks >= 0", name="ck_wallets_balance_non_negative"),
        CheckConstraint("bonus_balance_kopecks >= 0", name="ck_wallets_bonus_non_negative"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    contractor_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    balance_kopecks: Mapped[int] = mapped_column(BigInteger, default=0)
    bonus_balance_kopecks: Mapped[int] = mapped_column(BigInteger, default=0)
    currency: Mapped[str] = mapped_column(String, default="RUB")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"

    # Immutable ledger for contractor wallets.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    wallet_id: Mapped[str] = mapped_column(String, index=True)
    contractor_id: Mapped[str] = mapped_column(String, index=True)
    amount_kopecks: Mapped[int] = mapped_column(BigInteger)
    # credit | debit
    type: Mapped[str] = mapped_column(String)
    # signup_bonus | bid | manual_adjustment
    source: Mapped[str] = mapped_column(String)
    balance_after_kopecks: Mapped[int] = mapped_column(BigInteger)
    bonus_balance_after_kopecks: Mapped[int] = mapped_column(BigInteger)
    meta: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Null org_id for scheduler and system events.
    org_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
