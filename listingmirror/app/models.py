"""Database models for the listing mirror."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base declarative class."""


class SyncStatus(str, PyEnum):
    """Lifecycle of a platform sync run."""

    IDLE = "idle"
    RUNNING = "running"
    FAILED = "failed"


class StockChangeType(str, PyEnum):
    """Classification of an inventory ledger row."""

    SOLD = "sold"
    RESTOCK = "restock"
    CORRECTION = "correction"
    INITIAL = "initial"


class TriggerType(str, PyEnum):
    """Origin of a payout price mutation."""

    MANUAL = "manual"
    AUTO_UNDERCUT = "auto_undercut"


class ErrorKind(str, PyEnum):
    """Kinds of throttled error notifications."""

    STOP_LOSS = "stop_loss"
    API_ERROR = "api_error"


class Platform(Base):
    """Upstream marketplace being mirrored."""

    __tablename__ = "platforms"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    base_url: Mapped[str | None] = mapped_column(String(255))
    sync_status: Mapped[str] = mapped_column(String(16), default=SyncStatus.IDLE.value, nullable=False)
    last_sync_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_sync_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    listings: Mapped[list["Listing"]] = relationship("Listing", back_populates="platform")


class Listing(Base):
    """Current state of one mirrored listing."""

    __tablename__ = "listings"
    __table_args__ = (
        Index("ix_listings_platform_sku_variant", "platform_id", "product_sku", "variant_id"),
        Index("ix_listings_sku_size", "platform_id", "product_sku", "size"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    platform_id: Mapped[int] = mapped_column(ForeignKey("platforms.id"), nullable=False)
    product_sku: Mapped[str] = mapped_column(String(100), nullable=False)
    variant_id: Mapped[str | None] = mapped_column(String(100))
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    image_url: Mapped[str | None] = mapped_column(Text)
    size: Mapped[str | None] = mapped_column(String(50))
    current_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    current_stock: Mapped[int | None] = mapped_column(Integer)
    is_lowest: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    brand: Mapped[str | None] = mapped_column(String(255))
    payout_price: Mapped[int | None] = mapped_column(Integer)
    commission_basis_points: Mapped[int | None] = mapped_column(Integer)
    external_listing_refs: Mapped[list[str] | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    auto_reprice_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    stop_loss_price: Mapped[int | None] = mapped_column(Integer)
    last_event_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    platform: Mapped["Platform"] = relationship("Platform", back_populates="listings")


class PriceHistory(Base):
    """Append-only ledger of observed price changes."""

    __tablename__ = "price_history"
    __table_args__ = (Index("ix_price_history_timeline", "listing_id", "recorded_at"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    listing_id: Mapped[int] = mapped_column(ForeignKey("listings.id"), nullable=False)
    old_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class InventoryHistory(Base):
    """Append-only ledger of observed stock changes."""

    __tablename__ = "inventory_history"
    __table_args__ = (Index("ix_inventory_history_timeline", "listing_id", "recorded_at"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    listing_id: Mapped[int] = mapped_column(ForeignKey("listings.id"), nullable=False)
    old_stock: Mapped[int | None] = mapped_column(Integer)
    stock: Mapped[int] = mapped_column(Integer, nullable=False)
    change_type: Mapped[str] = mapped_column(String(16), default=StockChangeType.INITIAL.value, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class CustomFieldHistory(Base):
    """Append-only ledger of custom field changes (lowest flag, payout, ...)."""

    __tablename__ = "custom_field_history"
    __table_args__ = (Index("ix_custom_field_history_timeline", "listing_id", "field_name", "recorded_at"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    listing_id: Mapped[int] = mapped_column(ForeignKey("listings.id"), nullable=False)
    field_name: Mapped[str] = mapped_column(String(64), nullable=False)
    old_value: Mapped[str | None] = mapped_column(Text)
    new_value: Mapped[str] = mapped_column(Text, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class PriceMutation(Base):
    """Audit log of every attempted payout change, successful or not."""

    __tablename__ = "price_mutations"
    __table_args__ = (Index("ix_price_mutations_listing_created", "listing_id", "created_at"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    listing_id: Mapped[int] = mapped_column(ForeignKey("listings.id"), nullable=False)
    old_payout_price: Mapped[int | None] = mapped_column(Integer)
    new_payout_price: Mapped[int] = mapped_column(Integer, nullable=False)
    old_projected_price: Mapped[int | None] = mapped_column(Integer)
    new_projected_price: Mapped[int | None] = mapped_column(Integer)
    trigger_type: Mapped[str] = mapped_column(String(32), nullable=False)
    trigger_reason: Mapped[str | None] = mapped_column(Text)
    market_lowest_at_trigger: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class ErrorNotification(Base):
    """Last time an error kind was reported for a listing."""

    __tablename__ = "error_notifications"
    __table_args__ = (
        UniqueConstraint("listing_id", "error_kind", name="uq_error_notification_listing_kind"),
        Index("ix_error_notifications_last_notified", "last_notified_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    listing_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    error_kind: Mapped[str] = mapped_column(String(50), nullable=False)
    last_message: Mapped[str | None] = mapped_column(Text)
    last_notified_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
