from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import BigInteger, Boolean, DateTime, Integer, Numeric, String, func
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    # SQLite hands naive datetimes back
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


class Configuration(Base):
    __tablename__ = "configuration"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    main_channel_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    main_message_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    delivery_channel_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    client_role_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    guild_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)


class StockItem(Base):
    __tablename__ = "stock_items"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)  # normalized slug
    name: Mapped[str] = mapped_column(String(256), index=True)
    emoji: Mapped[str] = mapped_column(String(32), default="")
    quantity: Mapped[int] = mapped_column(Integer, default=0)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    max: Mapped[int] = mapped_column(Integer, default=100)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "emoji": self.emoji,
            "quantity": self.quantity,
            "price": float(self.price),
            "max": self.max,
        }


class DeliveryRecord(Base):
    __tablename__ = "delivery_records"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    mention: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    item_id: Mapped[str] = mapped_column(String(64), index=True)
    item_name: Mapped[str] = mapped_column(String(256))  # snapshot at delivery time
    quantity: Mapped[int] = mapped_column(Integer)
    photo_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    message_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    message_status: Mapped[int] = mapped_column(Integer)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "mention": self.mention,
            "itemId": self.item_id,
            "itemName": self.item_name,
            "quantity": self.quantity,
            "photoUrl": self.photo_url,
            "messageSent": self.message_sent,
            "messageStatus": self.message_status,
            "timestamp": _iso(self.timestamp),
        }


class TicketStatus:
    OPEN = "open"
    AWAITING_PROOF = "awaiting_proof"
    DELIVERED = "delivered"
    ARCHIVED = "archived"


class Ticket(Base):
    __tablename__ = "tickets"
    id: Mapped[str] = mapped_column(String(32), primary_key=True)  # opaque, goes into callback_data
    item_id: Mapped[str] = mapped_column(String(64))
    buyer_id: Mapped[int] = mapped_column(BigInteger)
    buyer_name: Mapped[str] = mapped_column(String(256))
    chat_id: Mapped[int] = mapped_column(BigInteger)
    thread_id: Mapped[int] = mapped_column(BigInteger)
    status: Mapped[str] = mapped_column(String(32), default=TicketStatus.OPEN, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


def make_engine(url: str) -> AsyncEngine:
    return create_async_engine(url, echo=False, pool_pre_ping=True, future=True)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
