from __future__ import annotations

import asyncio
import html
import logging
import math
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from telegram import Bot, InlineKeyboardMarkup, Message

from .actions import BuyItem, single_button
from .chat import edit_text, read_message_text, send_text
from .config import ConfigStore
from .errors import ConflictError, EditForbidden, MessageMissing, ValidationError
from .models import StockItem

LOG = logging.getLogger("storefront_bot.catalog")

SOLD_OUT = "SOLD OUT"

# Used to populate an empty database on first run
DEFAULT_STOCK = [
    {"id": "TOMATRIO", "name": "TOMATRIO", "emoji": "🍅", "quantity": 202, "price": Decimal("0.50"), "max": 300},
    {"id": "MANGO", "name": "MANGO", "emoji": "🥭", "quantity": 260, "price": Decimal("0.70"), "max": 300},
    {"id": "MR_CARROT", "name": "MR CARROT", "emoji": "🥕", "quantity": 74, "price": Decimal("0.40"), "max": 150},
    {"id": "PLANTA", "name": "PLANTA (100k ~ 500k DPS)", "emoji": "🌱", "quantity": 12, "price": Decimal("7.50"), "max": 20},
]


# ---------- Parsing ----------
def normalize_id(raw: Any) -> str:
    return re.sub(r"\s+", "_", str(raw).strip()).upper()


# Item ids travel inside Telegram callback_data, which caps at 64 bytes.
MAX_ID_BYTES = 40


def checked_id(raw: Any) -> str:
    item_id = normalize_id(raw)
    if len(item_id.encode("utf-8")) > MAX_ID_BYTES:
        raise ValidationError(f"id {item_id} is too long (max {MAX_ID_BYTES} bytes)")
    return item_id


def _loose_number(value: Any) -> float:
    # Admin form values: anything unparsable counts as zero.
    try:
        number = float(str(value).strip().replace(",", "."))
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def parse_quantity(key: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{key}: invalid quantity {value!r}")
    try:
        qty = int(str(value).strip())
    except ValueError:
        raise ValidationError(f"{key}: invalid quantity {value!r}") from None
    if qty < 0:
        raise ValidationError(f"{key}: quantity cannot be negative")
    return qty


def parse_price(key: str, value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{key}: invalid price {value!r}")
    try:
        price = Decimal(str(value).strip().replace(",", "."))
    except InvalidOperation:
        raise ValidationError(f"{key}: invalid price {value!r}") from None
    if not price.is_finite() or price < 0:
        raise ValidationError(f"{key}: invalid price {value!r}")
    return price.quantize(Decimal("0.01"))


def _present(data: Mapping[str, Any], key: str) -> bool:
    return key in data and data[key] is not None and str(data[key]).strip() != ""


# ---------- DB Ops ----------
async def list_stock(session: AsyncSession) -> List[StockItem]:
    res = await session.execute(select(StockItem).order_by(StockItem.name.asc()))
    return list(res.scalars())


async def list_available(session: AsyncSession) -> List[StockItem]:
    res = await session.execute(
        select(StockItem).where(StockItem.quantity > 0).order_by(StockItem.name.asc())
    )
    return list(res.scalars())


async def get_item(session: AsyncSession, item_id: str) -> Optional[StockItem]:
    return await session.get(StockItem, item_id)


def _new_item(item_id: str, data: Mapping[str, Any]) -> StockItem:
    quantity = int(_loose_number(data.get("quantity")))
    return StockItem(
        id=item_id,
        name=str(data.get("name") or item_id).strip().upper(),
        emoji=str(data.get("emoji") or ""),
        price=Decimal(str(_loose_number(data.get("price")))).quantize(Decimal("0.01")),
        quantity=quantity,
        max=int(_loose_number(data.get("max"))) or quantity or 100,
    )


async def add_item(session: AsyncSession, data: Mapping[str, Any]) -> StockItem:
    if not _present(data, "id") or not _present(data, "name"):
        raise ValidationError("id and name are required")
    item_id = checked_id(data["id"])
    if await get_item(session, item_id) is not None:
        raise ConflictError(f"ID {item_id} already exists")
    item = _new_item(item_id, data)
    session.add(item)
    await session.flush()
    LOG.info("Added stock item %s", item_id)
    return item


async def bulk_update(session: AsyncSession, data: Mapping[str, Any]) -> int:
    """Apply `<ID>_quantity` / `<ID>_price` keys to existing items; nothing is written if any value is bad."""
    res = await session.execute(select(StockItem).with_for_update())
    planned: List[Tuple[StockItem, Dict[str, Any]]] = []
    for item in res.scalars():
        changes: Dict[str, Any] = {}
        qty_key, price_key = f"{item.id}_quantity", f"{item.id}_price"
        if _present(data, qty_key):
            changes["quantity"] = parse_quantity(qty_key, data[qty_key])
        if _present(data, price_key):
            changes["price"] = parse_price(price_key, data[price_key])
        if changes:
            planned.append((item, changes))

    for item, changes in planned:
        for attr, value in changes.items():
            setattr(item, attr, value)
    await session.flush()
    LOG.info("Bulk stock update touched %d item(s)", len(planned))
    return len(planned)


async def upsert_items(session: AsyncSession, rows: Iterable[Mapping[str, Any]]) -> int:
    count = 0
    for row in rows:
        raw_id = row.get("id") if _present(row, "id") else row.get("name")
        if raw_id is None or not str(raw_id).strip():
            continue
        item_id = normalize_id(raw_id)
        item = await get_item(session, item_id)
        if item is None:
            item_id = checked_id(raw_id)
            session.add(_new_item(item_id, row))
        else:
            if _present(row, "quantity"):
                item.quantity = parse_quantity(f"{item_id}_quantity", row["quantity"])
            if _present(row, "price"):
                item.price = parse_price(f"{item_id}_price", row["price"])
            if _present(row, "emoji"):
                item.emoji = str(row["emoji"])
            if _present(row, "max"):
                item.max = int(_loose_number(row["max"])) or item.max
        count += 1
    await session.flush()
    return count


async def seed_stock(session: AsyncSession) -> bool:
    count = await session.scalar(select(func.count()).select_from(StockItem))
    if count:
        return False
    LOG.info("Stock table is empty. Populating with default data...")
    session.add_all(StockItem(**row) for row in DEFAULT_STOCK)
    await session.flush()
    return True


# ---------- Price board ----------
def format_price(price: Decimal, currency: str) -> str:
    return f"{currency}{Decimal(price):.2f}"


def render_item_block(item: StockItem, currency: str) -> str:
    stock = str(item.quantity) if item.quantity > 0 else SOLD_OUT
    return (
        f"<b>{html.escape(f'{item.emoji} {item.name}'.strip())}</b>\n"
        f"Price: {html.escape(format_price(item.price, currency))}\n"
        f"Stock: {stock}"
    )


def render_price_board(
    items: Iterable[StockItem], store_name: str, currency: str
) -> Tuple[str, InlineKeyboardMarkup]:
    parts = [f"🧠 <b>{html.escape(store_name)} | PRICE TABLE</b>"]
    parts.extend(render_item_block(item, currency) for item in items)
    parts.append(f"🛒 {html.escape(store_name)}")
    return "\n\n".join(parts), single_button("🛒 Buy", BuyItem())


_QTY_RE = re.compile(r"(?:Stock|Estoque):\s*([0-9]+|SOLD OUT|ESGOTADO)", re.IGNORECASE)
_PRICE_RE = re.compile(r"(?:Price|Preço):\s*[^\d\s]*\s*(\d[\d.,]*)", re.IGNORECASE)


def parse_board_blocks(text: str) -> List[Tuple[str, Dict[str, Any]]]:
    """Split price-board text into (heading, {quantity, price}) pairs."""
    out: List[Tuple[str, Dict[str, Any]]] = []
    for block in re.split(r"\n\s*\n", text.replace("**", "")):
        lines = [ln.strip() for ln in block.strip().splitlines() if ln.strip()]
        if not lines:
            continue
        body = "\n".join(lines[1:])
        values: Dict[str, Any] = {}
        m = _QTY_RE.search(body)
        if m:
            token = m.group(1).upper()
            values["quantity"] = 0 if token in (SOLD_OUT, "ESGOTADO") else int(token)
        m = _PRICE_RE.search(body)
        if m:
            try:
                values["price"] = Decimal(m.group(1).replace(",", ".")).quantize(Decimal("0.01"))
            except InvalidOperation:
                pass
        if values:
            out.append((lines[0], values))
    return out


def match_item(heading: str, items: Iterable[StockItem]) -> Optional[StockItem]:
    candidates = [item for item in items if item.name and item.name in heading]
    return max(candidates, key=lambda item: len(item.name), default=None)


class PriceBoard:
    def __init__(
        self,
        bot: Bot,
        session_factory: async_sessionmaker[AsyncSession],
        config: ConfigStore,
        store_name: str = "DOLLYA STORE",
        currency: str = "R$",
    ) -> None:
        self.bot = bot
        self.session_factory = session_factory
        self.config = config
        self.store_name = store_name
        self.currency = currency

    async def render(self) -> Tuple[str, InlineKeyboardMarkup]:
        async with self.session_factory() as s:
            items = await list_stock(s)
        return render_price_board(items, self.store_name, self.currency)

    async def refresh(self) -> Optional[Message]:
        cfg = self.config.current
        if not cfg.main_channel_id:
            LOG.info("Main channel not configured; skipping price board refresh.")
            return None
        text, markup = await self.render()

        if cfg.main_message_id:
            try:
                message = await edit_text(self.bot, cfg.main_channel_id, cfg.main_message_id, text, markup)
                LOG.info("Price board message %s updated.", cfg.main_message_id)
                return message
            except (MessageMissing, EditForbidden) as exc:
                LOG.warning(
                    "Could not edit price board message %s (%s). Sending a new one.", cfg.main_message_id, exc
                )
                await self.config.update(main_message_id=None)

        message = await send_text(self.bot, cfg.main_channel_id, text, markup)
        await self.config.update(main_message_id=str(message.message_id))
        LOG.info("Price board created with message id %s.", message.message_id)
        return message

    async def reconcile(self) -> int:
        """Overwrite local quantity/price from the last posted board; returns items touched."""
        cfg = self.config.current
        if not (cfg.main_channel_id and cfg.main_message_id):
            LOG.info("Channel/message id not configured; nothing to reconcile.")
            return 0
        text = await read_message_text(self.bot, cfg.main_channel_id, cfg.main_message_id)
        if not text:
            return 0

        LOG.info("Reading price board back from Telegram to update local stock...")
        touched = 0
        async with self.session_factory() as s, s.begin():
            items = await list_stock(s)
            for heading, values in parse_board_blocks(text):
                item = match_item(heading, items)
                if item is None:
                    continue
                for attr, value in values.items():
                    setattr(item, attr, value)
                touched += 1
        LOG.info("Local stock reconciled from the price board (%d item(s)); other items kept.", touched)
        return touched


class PriceBoardRefresher:
    """Runs price-board refreshes off the request path, coalescing bursts and retrying with backoff."""

    def __init__(self, board: PriceBoard, attempts: int = 3, base_delay: float = 1.0) -> None:
        self.board = board
        self.attempts = attempts
        self.base_delay = base_delay
        self._task: Optional[asyncio.Task] = None
        self._dirty = False

    def request(self) -> asyncio.Task:
        if self._task is not None and not self._task.done():
            self._dirty = True
            return self._task
        self._task = asyncio.get_running_loop().create_task(self._run())
        return self._task

    async def drain(self) -> None:
        if self._task is not None:
            await self._task

    async def _run(self) -> None:
        while True:
            self._dirty = False
            await self._refresh_with_retry()
            if not self._dirty:
                return

    async def _refresh_with_retry(self) -> None:
        delay = self.base_delay
        for attempt in range(1, self.attempts + 1):
            try:
                await self.board.refresh()
                return
            except Exception:
                if attempt == self.attempts:
                    LOG.exception("Price board refresh failed after %d attempt(s)", attempt)
                    return
                LOG.warning(
                    "Price board refresh failed (attempt %d/%d); retrying in %.1fs",
                    attempt, self.attempts, delay,
                )
                await asyncio.sleep(delay)
                delay *= 2
