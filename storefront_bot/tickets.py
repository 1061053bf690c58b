from __future__ import annotations

import asyncio
import html
import logging
import secrets
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, Optional, Set, Tuple, Union

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from telegram import Bot, Message, User
from telegram.constants import ChatMemberStatus
from telegram.error import TelegramError

from .actions import CloseTicket, ConfirmDelivery, single_button
from .catalog import get_item
from .chat import chat_ref, send_text, user_mention
from .config import ConfigStore
from .deliveries import DeliveryService, upload_filename
from .errors import ConflictError, NotFoundError, PermissionDenied, ValidationError
from .models import DeliveryRecord, Ticket, TicketStatus

LOG = logging.getLogger("storefront_bot.tickets")

PROOF_WINDOW = 120
DELIVERED_GRACE = 10
CLOSE_GRACE = 5
AUTO_ARCHIVE = 24 * 3600
TIMEOUT_NOTE = "Delivery confirmed from the ticket panel."
MAX_TOPIC_NAME = 128


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class ProofCollector:
    """One-shot message collectors, one per ticket topic, each accepting a single author."""

    def __init__(self) -> None:
        self._pending: Dict[Tuple[int, int], Tuple[int, asyncio.Future]] = {}

    def is_waiting(self, chat_id: int, thread_id: int) -> bool:
        return (chat_id, thread_id) in self._pending

    def offer(self, message: Message) -> bool:
        if message.message_thread_id is None or message.from_user is None:
            return False
        entry = self._pending.get((message.chat_id, message.message_thread_id))
        if entry is None:
            return False
        author_id, future = entry
        if message.from_user.id != author_id or future.done():
            return False
        future.set_result(message)
        return True

    async def wait(self, chat_id: int, thread_id: int, author_id: int, timeout: float) -> Optional[Message]:
        key = (chat_id, thread_id)
        if key in self._pending:
            raise ConflictError("A proof collection is already running for this ticket.")
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[key] = (author_id, future)
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            self._pending.pop(key, None)


async def resolve_approver(bot: Bot, config: ConfigStore, admin_id: Optional[int] = None) -> Optional[int]:
    """ADMIN_TELEGRAM_ID wins; otherwise the owner of the tickets group, asked fresh every time."""
    if admin_id:
        return admin_id
    guild = config.current.guild_id
    if not guild:
        return None
    for member in await bot.get_chat_administrators(chat_id=chat_ref(guild)):
        if member.status == ChatMemberStatus.OWNER:
            return member.user.id
    return None


class TicketWorkflow:
    def __init__(
        self,
        bot: Bot,
        session_factory: async_sessionmaker[AsyncSession],
        config: ConfigStore,
        deliveries: DeliveryService,
        *,
        uploads_dir: Path,
        public_base_url: str,
        admin_id: Optional[int] = None,
        collector: Optional[ProofCollector] = None,
        proof_window: float = PROOF_WINDOW,
        delivered_grace: float = DELIVERED_GRACE,
        close_grace: float = CLOSE_GRACE,
        auto_archive: float = AUTO_ARCHIVE,
    ) -> None:
        self.bot = bot
        self.session_factory = session_factory
        self.config = config
        self.deliveries = deliveries
        self.uploads_dir = Path(uploads_dir)
        self.public_base_url = public_base_url.rstrip("/")
        self.admin_id = admin_id
        self.collector = collector or ProofCollector()
        self.proof_window = proof_window
        self.delivered_grace = delivered_grace
        self.close_grace = close_grace
        self.auto_archive = auto_archive
        self._tasks: Set[asyncio.Task] = set()

    # ---------- State ----------
    async def get(self, ticket_id: str) -> Ticket:
        async with self.session_factory() as s:
            ticket = await s.get(Ticket, ticket_id)
        if ticket is None:
            raise NotFoundError("Ticket not found.")
        return ticket

    async def _transition(self, ticket_id: str, source: Union[str, Iterable[str]], target: str) -> bool:
        sources = [source] if isinstance(source, str) else list(source)
        async with self.session_factory() as s, s.begin():
            res = await s.execute(
                update(Ticket)
                .where(Ticket.id == ticket_id, Ticket.status.in_(sources))
                .values(status=target)
            )
        return res.rowcount == 1

    async def approver_id(self) -> Optional[int]:
        return await resolve_approver(self.bot, self.config, self.admin_id)

    # ---------- Transitions ----------
    async def open_ticket(self, item_id: str, buyer: User) -> Tuple[Ticket, str]:
        async with self.session_factory() as s:
            item = await get_item(s, item_id)
        if item is None:
            raise NotFoundError("The selected item was not found.")
        guild = self.config.current.guild_id
        if not guild:
            raise ValidationError("The tickets group is not configured.")

        chat = chat_ref(guild)
        chat_id = chat if isinstance(chat, int) else (await self.bot.get_chat(chat)).id
        approver = await self.approver_id()
        buyer_name = buyer.username or buyer.full_name
        topic = await self.bot.create_forum_topic(
            chat_id=chat_id, name=f"Purchase of {item.name} - {buyer_name}"[:MAX_TOPIC_NAME]
        )
        ticket = Ticket(
            id=secrets.token_hex(8),
            item_id=item.id,
            buyer_id=buyer.id,
            buyer_name=buyer_name,
            chat_id=chat_id,
            thread_id=topic.message_thread_id,
            status=TicketStatus.OPEN,
        )
        async with self.session_factory() as s, s.begin():
            s.add(ticket)

        invite = await self.bot.create_chat_invite_link(
            chat_id=chat_id,
            member_limit=1,
            expire_date=datetime.now(timezone.utc) + timedelta(seconds=self.auto_archive),
            name=f"ticket {ticket.id}",
        )

        people = user_mention(buyer.id, buyer.first_name)
        if approver:
            people += f" and {user_mention(approver, 'admin')}"
        await send_text(
            self.bot,
            chat_id,
            f"Hello {people}! This is your ticket for the purchase of "
            f"<b>{html.escape(f'{item.emoji} {item.name}'.strip())}</b>.\n"
            "Please discuss the details of the transaction here.",
            single_button("Close Ticket", CloseTicket(ticket.id)),
            thread_id=ticket.thread_id,
        )
        if approver:
            await send_text(
                self.bot,
                chat_id,
                f"{user_mention(approver, 'admin')}, has the order been delivered?",
                single_button("Confirm Delivery", ConfirmDelivery(ticket.id)),
                thread_id=ticket.thread_id,
            )

        LOG.info("Ticket %s opened for %s (%s) on item %s", ticket.id, buyer_name, buyer.id, item.id)
        return ticket, invite.invite_link

    async def confirm(self, ticket_id: str, actor_id: int) -> Ticket:
        approver = await self.approver_id()
        if approver is None or actor_id != approver:
            raise PermissionDenied("Only the administrator can confirm the delivery.")
        ticket = await self.get(ticket_id)
        if not await self._transition(ticket.id, TicketStatus.OPEN, TicketStatus.AWAITING_PROOF):
            raise ConflictError("This ticket is already being processed.")
        self._spawn(self._collect_and_deliver(ticket, approver))
        return ticket

    async def close(self, ticket_id: str) -> Ticket:
        ticket = await self.get(ticket_id)
        if not await self._transition(ticket.id, TicketStatus.OPEN, TicketStatus.ARCHIVED):
            raise ConflictError("This ticket is already being processed.")
        self._later(self.close_grace, self._close_topic, ticket, "Ticket closed manually.")
        LOG.info("Ticket %s closed manually", ticket.id)
        return ticket

    async def deliver(self, ticket: Ticket, note: Optional[str], photo_url: Optional[str]) -> Optional[DeliveryRecord]:
        if not await self._transition(ticket.id, TicketStatus.AWAITING_PROOF, TicketStatus.DELIVERED):
            LOG.warning("Ticket %s is not awaiting proof; delivery skipped", ticket.id)
            return None
        try:
            return await self.deliveries.create(
                ticket.item_id,
                1,
                recipient=str(ticket.buyer_id),
                note=note,
                photo_url=photo_url,
            )
        except (ValidationError, NotFoundError) as exc:
            LOG.error("Delivery for ticket %s failed: %s", ticket.id, exc.message)
            await send_text(self.bot, ticket.chat_id, f"Error: {html.escape(exc.message)}", thread_id=ticket.thread_id)
            return None

    async def archive(self, ticket_id: str, reason: str) -> bool:
        async with self.session_factory() as s:
            ticket = await s.get(Ticket, ticket_id)
        if ticket is None or ticket.status == TicketStatus.ARCHIVED:
            return False
        if not await self._transition(ticket.id, ticket.status, TicketStatus.ARCHIVED):
            return False
        await self._close_topic(ticket, reason)
        return True

    async def sweep_stale(self) -> int:
        """Archive tickets older than the auto-archive window."""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.auto_archive)
        async with self.session_factory() as s:
            res = await s.execute(select(Ticket).where(Ticket.status != TicketStatus.ARCHIVED))
            stale = [t for t in res.scalars() if _aware(t.created_at) < cutoff]
        count = 0
        for ticket in stale:
            if await self.archive(ticket.id, "Ticket expired."):
                count += 1
        if count:
            LOG.info("Archived %d stale ticket(s)", count)
        return count

    async def sweep_forever(self, interval: float = 600) -> None:
        while True:
            try:
                await self.sweep_stale()
            except Exception:
                LOG.exception("Stale ticket sweep failed")
            await asyncio.sleep(interval)

    # ---------- Proof collection ----------
    async def _collect_and_deliver(self, ticket: Ticket, approver: int) -> None:
        # One delivery attempt per window; archival is scheduled either way.
        try:
            await send_text(
                self.bot,
                ticket.chat_id,
                "Please send the proof photo and/or a note for the delivery "
                f'(e.g. "handed over in person"). You have {int(self.proof_window)} seconds.',
                thread_id=ticket.thread_id,
            )
        except TelegramError as exc:
            LOG.warning("Could not post the proof prompt to ticket %s: %s", ticket.id, exc)
        message = await self.collector.wait(ticket.chat_id, ticket.thread_id, approver, self.proof_window)

        try:
            if message is None:
                note, photo_url = TIMEOUT_NOTE, None
            else:
                note, photo_url = message.text or message.caption, await self._store_photo(message)

            record = await self.deliver(ticket, note, photo_url)
            if record is not None and message is not None:
                await message.reply_text("✅ Delivery recorded in the delivery channel!")
            elif record is not None:
                await send_text(
                    self.bot,
                    ticket.chat_id,
                    "⏳ Time is up. The delivery was recorded without photo or note.",
                    thread_id=ticket.thread_id,
                )
            await send_text(
                self.bot,
                ticket.chat_id,
                f"This ticket will be closed in {int(self.delivered_grace)} seconds.",
                thread_id=ticket.thread_id,
            )
        except Exception:
            LOG.exception("Proof collection for ticket %s failed", ticket.id)
            await self._apologize(ticket)
        self._later(self.delivered_grace, self.archive, ticket.id, "Delivery confirmed and ticket finished.")

    async def _store_photo(self, message: Message) -> Optional[str]:
        if message.photo:
            file_id, suffix = message.photo[-1].file_id, ".jpg"
        elif message.document and (message.document.mime_type or "").startswith("image/"):
            file_id = message.document.file_id
            suffix = Path(message.document.file_name or "").suffix or ".jpg"
        else:
            return None
        name = upload_filename(suffix)
        try:
            tg_file = await self.bot.get_file(file_id)
            self.uploads_dir.mkdir(parents=True, exist_ok=True)
            await tg_file.download_to_drive(self.uploads_dir / name)
        except (TelegramError, OSError) as exc:
            LOG.warning("Could not download the proof photo for topic %s: %s", message.message_thread_id, exc)
            return None
        return f"{self.public_base_url}/uploads/{name}"

    # ---------- Timers ----------
    async def _close_topic(self, ticket: Ticket, reason: str) -> None:
        try:
            await self.bot.close_forum_topic(chat_id=ticket.chat_id, message_thread_id=ticket.thread_id)
            LOG.info("Ticket %s archived: %s", ticket.id, reason)
        except TelegramError as exc:
            LOG.warning("Could not close topic for ticket %s: %s", ticket.id, exc)

    async def _apologize(self, ticket: Ticket) -> None:
        try:
            await send_text(
                self.bot,
                ticket.chat_id,
                "An error occurred while processing your request.",
                thread_id=ticket.thread_id,
            )
        except TelegramError:
            LOG.warning("Could not post apology to ticket %s", ticket.id)

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _later(self, delay: float, fn: Callable[..., Awaitable[object]], *args: object) -> asyncio.Task:
        async def run() -> None:
            await asyncio.sleep(delay)
            try:
                await fn(*args)
            except Exception:
                LOG.exception("Scheduled ticket job %s failed", getattr(fn, "__name__", fn))

        return self._spawn(run())

    async def drain(self) -> None:
        """Wait for running collections and timers (tests use short delays)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
