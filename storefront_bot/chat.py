from __future__ import annotations

import html
import logging
import re
from typing import Optional, Union

from telegram import Bot, InlineKeyboardMarkup, LinkPreviewOptions, Message
from telegram.constants import ParseMode
from telegram.error import BadRequest, Forbidden, TelegramError

from .errors import ChatPlatformError, EditForbidden, MessageMissing

LOG = logging.getLogger("storefront_bot.chat")

ChatRef = Union[int, str]

_MISSING_MARKERS = ("message to edit not found", "message_id_invalid", "message not found")
_FORBIDDEN_MARKERS = ("message can't be edited", "not enough rights", "have no rights")
_USER_ID_RE = re.compile(r"^\d{5,15}$")
NO_PREVIEW = LinkPreviewOptions(is_disabled=True)


def chat_ref(value: Union[str, int]) -> ChatRef:
    """Stored ids are strings; numeric ones go to the Bot API as ints, '@channel' stays as is."""
    if isinstance(value, int):
        return value
    text = str(value).strip()
    return int(text) if text.lstrip("-").isdigit() else text


# ---------- Mentions ----------
def user_mention(user_id: Union[int, str], label: Optional[str] = None) -> str:
    return f'<a href="tg://user?id={user_id}">{html.escape(label or str(user_id))}</a>'


def role_mention(tag: str) -> str:
    return "@" + html.escape(tag.lstrip("@"))


def format_mention(raw: str) -> str:
    raw = raw.strip()
    if _USER_ID_RE.match(raw):
        return user_mention(raw)
    return html.escape(raw)


# ---------- Send / edit ----------
async def send_text(
    bot: Bot,
    chat_id: ChatRef,
    text: str,
    reply_markup: Optional[InlineKeyboardMarkup] = None,
    thread_id: Optional[int] = None,
    preview_url: Optional[str] = None,
) -> Message:
    if preview_url:
        preview = LinkPreviewOptions(url=preview_url, prefer_small_media=True)
    else:
        preview = NO_PREVIEW
    return await bot.send_message(
        chat_id=chat_ref(chat_id),
        text=text,
        parse_mode=ParseMode.HTML,
        reply_markup=reply_markup,
        message_thread_id=thread_id,
        link_preview_options=preview,
    )


async def edit_text(
    bot: Bot,
    chat_id: ChatRef,
    message_id: Union[int, str],
    text: str,
    reply_markup: Optional[InlineKeyboardMarkup] = None,
) -> Optional[Message]:
    """Edit a message; returns None when Telegram reports nothing changed."""
    try:
        result = await bot.edit_message_text(
            chat_id=chat_ref(chat_id),
            message_id=int(message_id),
            text=text,
            parse_mode=ParseMode.HTML,
            reply_markup=reply_markup,
            link_preview_options=NO_PREVIEW,
        )
    except Forbidden as exc:
        raise EditForbidden(str(exc)) from exc
    except BadRequest as exc:
        reason = str(exc).lower()
        if "message is not modified" in reason:
            return None
        if any(marker in reason for marker in _MISSING_MARKERS):
            raise MessageMissing(str(exc)) from exc
        if any(marker in reason for marker in _FORBIDDEN_MARKERS):
            raise EditForbidden(str(exc)) from exc
        raise ChatPlatformError(str(exc)) from exc
    except TelegramError as exc:
        raise ChatPlatformError(str(exc)) from exc
    return result if isinstance(result, Message) else None


async def read_message_text(bot: Bot, chat_id: ChatRef, message_id: Union[int, str]) -> Optional[str]:
    # The Bot API cannot fetch a message by id: forward it silently, read the copy, drop the copy.
    target = chat_ref(chat_id)
    copy = await bot.forward_message(
        chat_id=target,
        from_chat_id=target,
        message_id=int(message_id),
        disable_notification=True,
    )
    try:
        return copy.text or copy.caption
    finally:
        try:
            await bot.delete_message(chat_id=target, message_id=copy.message_id)
        except TelegramError:
            LOG.warning("Could not delete forwarded copy %s in %s", copy.message_id, target)
