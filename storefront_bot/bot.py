from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, Type

from telegram import CallbackQuery, InlineKeyboardMarkup, Update
from telegram.error import BadRequest, Forbidden, TelegramError
from telegram.ext import (
    AIORateLimiter,
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from .actions import Action, BuyItem, CloseTicket, ConfirmDelivery, SelectItem, button, parse_action
from .catalog import format_price, list_available
from .chat import send_text
from .config import Settings
from .errors import StoreError
from .services import Services

LOG = logging.getLogger("storefront_bot.bot")

GENERIC_APOLOGY = "An error occurred while processing your request."

Handler = Callable[[CallbackQuery, Action, Services], Awaitable[None]]


def services_of(ctx: ContextTypes.DEFAULT_TYPE) -> Services:
    return ctx.bot_data["services"]


async def _notify(query: CallbackQuery, text: str) -> None:
    # A callback query can only be answered once; after that, fall back to a private message.
    try:
        await query.answer(text, show_alert=True)
    except BadRequest:
        await query.get_bot().send_message(chat_id=query.from_user.id, text=text)


async def _disable_buttons(query: CallbackQuery) -> None:
    try:
        await query.edit_message_reply_markup(reply_markup=None)
    except BadRequest as exc:
        LOG.warning("Could not remove buttons: %s", exc)


# ---------- Action handlers ----------
async def handle_buy(query: CallbackQuery, action: BuyItem, svc: Services) -> None:
    async with svc.session_factory() as s:
        items = await list_available(s)
    if not items:
        await query.answer("Sorry, all our items are sold out right now.", show_alert=True)
        return

    currency = svc.settings.currency
    rows = []
    for it in items:
        label = f"{it.emoji or ''} {it.name} | {format_price(it.price, currency)} | Stock: {it.quantity}"
        rows.append([button(label.strip(), SelectItem(it.id))])
    picker = InlineKeyboardMarkup(rows)
    try:
        await query.get_bot().send_message(
            chat_id=query.from_user.id,
            text="Please select the item you want to buy:",
            reply_markup=picker,
        )
    except Forbidden:
        await query.answer("Open a private chat with me, press Start, then tap Buy again.", show_alert=True)
        return
    await query.answer("I sent you the item list in a private message.")


async def handle_select(query: CallbackQuery, action: SelectItem, svc: Services) -> None:
    await query.answer()
    ticket, invite_link = await svc.tickets.open_ticket(action.item_id, query.from_user)
    await query.edit_message_text(f"Your purchase ticket was created. Join it here: {invite_link}")


async def handle_confirm(query: CallbackQuery, action: ConfirmDelivery, svc: Services) -> None:
    await svc.tickets.confirm(action.ticket_id, query.from_user.id)
    await query.answer("Button disabled. Processing...")
    await _disable_buttons(query)


async def handle_close(query: CallbackQuery, action: CloseTicket, svc: Services) -> None:
    ticket = await svc.tickets.close(action.ticket_id)
    await query.answer()
    await send_text(
        svc.bot,
        ticket.chat_id,
        f"The ticket will be closed in {int(svc.tickets.close_grace)} seconds...",
        thread_id=ticket.thread_id,
    )
    await _disable_buttons(query)


DISPATCH: Dict[Type, Handler] = {
    BuyItem: handle_buy,
    SelectItem: handle_select,
    ConfirmDelivery: handle_confirm,
    CloseTicket: handle_close,
}


# ---------- Update handlers ----------
async def on_callback(update: Update, ctx: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    if query is None:
        return
    action = parse_action(query.data or "")
    if action is None:
        await query.answer("Unknown action.", show_alert=True)
        return
    try:
        await DISPATCH[type(action)](query, action, services_of(ctx))
    except StoreError as exc:
        LOG.info("Interaction %r rejected: %s", query.data, exc.message)
        await _notify(query, exc.message)
    except Exception:
        LOG.exception("Error while processing interaction %r", query.data)
        try:
            await _notify(query, GENERIC_APOLOGY)
        except TelegramError:
            LOG.warning("Could not send apology to %s", query.from_user.id)


async def on_ticket_message(update: Update, ctx: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if message is not None:
        services_of(ctx).tickets.collector.offer(message)


async def start(update: Update, ctx: ContextTypes.DEFAULT_TYPE) -> None:
    await update.effective_message.reply_text(
        "Hi 👋 I am the store bot.\n"
        "Tap 🛒 Buy on the price table and I will send you the item list here."
    )


async def on_error(update: object, ctx: ContextTypes.DEFAULT_TYPE) -> None:
    LOG.error("Unhandled error while processing an update", exc_info=ctx.error)


def build_application(settings: Settings) -> Application:
    app: Application = (
        ApplicationBuilder()
        .token(settings.bot_token)
        .rate_limiter(AIORateLimiter(max_retries=2))
        .build()
    )
    app.add_handler(CommandHandler("start", start, filters=filters.ChatType.PRIVATE))
    app.add_handler(CallbackQueryHandler(on_callback))
    app.add_handler(
        MessageHandler(
            filters.ChatType.SUPERGROUP
            & filters.IS_TOPIC_MESSAGE
            & (filters.TEXT | filters.PHOTO | filters.Document.IMAGE)
            & ~filters.COMMAND,
            on_ticket_message,
        )
    )
    app.add_error_handler(on_error)
    return app
