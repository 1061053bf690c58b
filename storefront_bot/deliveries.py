from __future__ import annotations

import html
import logging
import secrets
import time
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from telegram import Bot
from telegram.error import TelegramError

from .catalog import PriceBoardRefresher, format_price, get_item
from .chat import format_mention, role_mention, send_text
from .config import ConfigStore
from .errors import NotFoundError, PersistenceError, ValidationError
from .models import DeliveryRecord, StockItem

LOG = logging.getLogger("storefront_bot.deliveries")


def compose_delivery(
    item: StockItem,
    quantity: int,
    note: Optional[str],
    photo_url: Optional[str],
    mention: Optional[str],
    client_role_id: Optional[str],
    store_name: str,
    currency: str,
) -> str:
    if mention:
        recipient = format_mention(mention)
    elif client_role_id:
        recipient = role_mention(client_role_id)
    else:
        recipient = None

    lines = [
        recipient or "New delivery registered!",
        "",
        "📦 <b>Delivery Confirmed</b>",
        f"<b>Recipient:</b> {recipient or 'Not configured'}",
        f"<b>Product:</b> {html.escape(f'{item.emoji} {item.name}'.strip())}",
        f"<b>Quantity:</b> {quantity}",
        f"<b>Unit price:</b> {html.escape(format_price(item.price, currency))}",
    ]
    if note:
        lines += ["", html.escape(note)]
    if photo_url:
        lines.append(f'<a href="{html.escape(photo_url, quote=True)}">📷 Photo</a>')
    lines += ["", f"<i>{html.escape(store_name)} - Delivery</i>"]
    return "\n".join(lines)


async def list_deliveries(session: AsyncSession) -> List[DeliveryRecord]:
    res = await session.execute(
        select(DeliveryRecord).order_by(DeliveryRecord.timestamp.desc(), DeliveryRecord.id.desc())
    )
    return list(res.scalars())


class DeliveryService:
    def __init__(
        self,
        bot: Bot,
        session_factory: async_sessionmaker[AsyncSession],
        config: ConfigStore,
        refresher: Optional[PriceBoardRefresher] = None,
        store_name: str = "DOLLYA STORE",
        currency: str = "R$",
    ) -> None:
        self.bot = bot
        self.session_factory = session_factory
        self.config = config
        self.refresher = refresher
        self.store_name = store_name
        self.currency = currency

    async def create(
        self,
        item_id: str,
        quantity: int = 1,
        *,
        recipient: Optional[str] = None,
        mention: Optional[str] = None,
        note: Optional[str] = None,
        photo_url: Optional[str] = None,
    ) -> DeliveryRecord:
        cfg = self.config.current
        if not cfg.delivery_channel_id:
            raise ValidationError("Delivery channel is not configured.")

        async with self.session_factory() as s:
            item = await get_item(s, item_id)
        if item is None:
            raise NotFoundError(f"Delivery item {item_id} not found.")

        text = compose_delivery(
            item, quantity, note, photo_url, mention, cfg.client_role_id, self.store_name, self.currency
        )
        # One attempt only; the record below is written whatever happens here.
        try:
            await send_text(self.bot, cfg.delivery_channel_id, text, preview_url=photo_url)
            sent = True
        except TelegramError:
            LOG.exception("Failed to post delivery of %s to channel %s", item_id, cfg.delivery_channel_id)
            sent = False

        record = DeliveryRecord(
            mention=recipient,
            item_id=item.id,
            item_name=item.name,
            quantity=quantity,
            photo_url=photo_url,
            message_sent=sent,
            message_status=200 if sent else 500,
        )
        try:
            async with self.session_factory() as s, s.begin():
                s.add(record)
                # No floor: stock may go negative.
                await s.execute(
                    update(StockItem)
                    .where(StockItem.id == item.id)
                    .values(quantity=StockItem.quantity - quantity)
                )
                await s.flush()
                await s.refresh(record)
        except SQLAlchemyError as exc:
            LOG.exception("Failed to record delivery of %s", item_id)
            raise PersistenceError("Failed to record the delivery.") from exc

        LOG.info("Delivery %s recorded: %d x %s (sent=%s)", record.id, quantity, item.id, sent)
        if self.refresher is not None:
            self.refresher.request()
        return record


def upload_filename(suffix: str) -> str:
    return f"{int(time.time() * 1000)}-{secrets.token_hex(3)}{suffix}"
