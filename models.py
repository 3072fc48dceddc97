"""SQLAlchemy database models."""

import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _uuid() -> str:
    return uuid.uuid4().hex


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class SavedListing(Base):
    """Scraped marketplace listing, unique on source URL."""

    __tablename__ = "saved_listings"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_uuid)
    platform: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    url: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    image: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price_raw: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price_min: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    price_max: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    moq_raw: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    moq: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    store_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    terms: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    rating_raw: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    orders_raw: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_scrape_status: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)  # OK, WEAK
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    category_rows: Mapped[List["ListingCategory"]] = relationship(
        "ListingCategory", back_populates="listing", cascade="all, delete-orphan"
    )

    @property
    def categories(self) -> List[str]:
        return sorted(row.category for row in self.category_rows)


class ListingCategory(Base):
    """Category tag attached to a saved listing."""

    __tablename__ = "listing_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    listing_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("saved_listings.id"), nullable=False, index=True
    )
    category: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    listing: Mapped["SavedListing"] = relationship("SavedListing", back_populates="category_rows")

    __table_args__ = (UniqueConstraint("listing_id", "category", name="uq_listing_category"),)


class ListingSearch(Base):
    """Frozen ordering of a search result set."""

    __tablename__ = "listing_searches"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_uuid)
    q: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    platform: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    filters_json: Mapped[str] = mapped_column(Text, default="{}", nullable=False)
    total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    items: Mapped[List["ListingSearchItem"]] = relationship(
        "ListingSearchItem", back_populates="search", cascade="all, delete-orphan",
        order_by="ListingSearchItem.position"
    )


class ListingSearchItem(Base):
    """One position in a search snapshot."""

    __tablename__ = "listing_search_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    search_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("listing_searches.id"), nullable=False, index=True
    )
    listing_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("saved_listings.id"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    search: Mapped["ListingSearch"] = relationship("ListingSearch", back_populates="items")
    listing: Mapped["SavedListing"] = relationship("SavedListing")


class Product(Base):
    """Product a pool buys, created from a saved listing."""

    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_uuid)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    image: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source_platform: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    source_url: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    unit_price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    base_currency: Mapped[str] = mapped_column(String(8), default="USD", nullable=False)
    moq_qty: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    pool: Mapped[Optional["Pool"]] = relationship("Pool", back_populates="product", uselist=False)


class Pool(Base):
    """Shared commitment toward one supplier's MOQ."""

    __tablename__ = "pools"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_uuid)
    product_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("products.id"), nullable=False, unique=True
    )
    status: Mapped[str] = mapped_column(String(16), default="OPEN", nullable=False, index=True)
    target_qty: Mapped[int] = mapped_column(Integer, nullable=False)
    pledged_qty: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    deadline_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    moq_reached_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_progress_milestone: Mapped[str] = mapped_column(String(8), default="NONE", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    product: Mapped["Product"] = relationship("Product", back_populates="pool")
    items: Mapped[List["PoolItem"]] = relationship(
        "PoolItem", back_populates="pool", cascade="all, delete-orphan"
    )


class PoolItem(Base):
    """A buyer's commitment to a pool."""

    __tablename__ = "pool_items"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_uuid)
    pool_id: Mapped[str] = mapped_column(String(32), ForeignKey("pools.id"), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), default="USD", nullable=False)
    address_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    pledge_counted: Mapped[bool] = mapped_column(default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    pool: Mapped["Pool"] = relationship("Pool", back_populates="items")
    payment: Mapped[Optional["Payment"]] = relationship(
        "Payment", back_populates="pool_item", uselist=False, cascade="all, delete-orphan"
    )


class Payment(Base):
    """Escrow-style payment attached to a pool item."""

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_uuid)
    pool_item_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("pool_items.id"), nullable=False, unique=True
    )
    method: Mapped[str] = mapped_column(String(16), default="STRIPE", nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), default="USD", nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="PENDING", nullable=False)
    reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    pool_item: Mapped["PoolItem"] = relationship("PoolItem", back_populates="payment")
