import asyncio
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import select, update
from telegram.error import TelegramError

from storefront_bot.catalog import get_item
from storefront_bot.errors import ConflictError, NotFoundError, PermissionDenied, PersistenceError, ValidationError
from storefront_bot.models import DeliveryRecord, Ticket, TicketStatus
from storefront_bot.tickets import TIMEOUT_NOTE, ProofCollector, resolve_approver

from tests.factories import APPROVER_ID, BUYER_ID, DELIVERY_CHAT, TICKETS_CHAT, make_message, make_user, sent_texts


@pytest_asyncio.fixture
async def tickets(services, stocked):
    await services.config.update(guild_id=str(TICKETS_CHAT), delivery_channel_id=str(DELIVERY_CHAT))
    return services.tickets


async def _status(session_factory, ticket_id: str) -> str:
    async with session_factory() as s:
        return (await s.get(Ticket, ticket_id)).status


async def _records(session_factory) -> list:
    async with session_factory() as s:
        return list((await s.execute(select(DeliveryRecord))).scalars())


async def _until_waiting(collector: ProofCollector, chat_id: int = TICKETS_CHAT, thread_id: int = 77) -> None:
    for _ in range(200):
        if collector.is_waiting(chat_id, thread_id):
            return
        await asyncio.sleep(0.005)
    raise AssertionError("proof collector never started")


class TestOpen:
    async def test_creates_topic_ticket_and_panels(self, tickets, bot, session_factory):
        ticket, link = await tickets.open_ticket("TOMATRIO", make_user())
        assert link == "https://t.me/+invite"
        assert bot.create_forum_topic.await_args.kwargs == {
            "chat_id": TICKETS_CHAT,
            "name": "Purchase of TOMATRIO - buyer",
        }
        invite = bot.create_chat_invite_link.await_args.kwargs
        assert invite["member_limit"] == 1

        assert await _status(session_factory, ticket.id) == TicketStatus.OPEN
        assert (ticket.chat_id, ticket.thread_id, ticket.buyer_id) == (TICKETS_CHAT, 77, BUYER_ID)

        markups = [c.kwargs["reply_markup"] for c in bot.send_message.await_args_list]
        data = [m.inline_keyboard[0][0].callback_data for m in markups]
        assert data == [f"close_ticket:{ticket.id}", f"confirm_delivery:{ticket.id}"]
        assert all(c.kwargs["message_thread_id"] == 77 for c in bot.send_message.await_args_list)

    async def test_without_known_approver_only_close_panel(self, tickets, bot):
        bot.get_chat_administrators.return_value = []
        await tickets.open_ticket("TOMATRIO", make_user())
        assert bot.send_message.await_count == 1

    async def test_unknown_item(self, tickets, bot):
        with pytest.raises(NotFoundError):
            await tickets.open_ticket("GHOST", make_user())
        bot.create_forum_topic.assert_not_awaited()

    async def test_requires_tickets_group(self, services, stocked, bot):
        with pytest.raises(ValidationError):
            await services.tickets.open_ticket("TOMATRIO", make_user())
        bot.create_forum_topic.assert_not_awaited()


class TestConfirm:
    async def test_only_the_approver_may_confirm(self, tickets, session_factory):
        ticket, _ = await tickets.open_ticket("TOMATRIO", make_user())
        with pytest.raises(PermissionDenied):
            await tickets.confirm(ticket.id, BUYER_ID)
        assert await _status(session_factory, ticket.id) == TicketStatus.OPEN
        assert not tickets.collector.is_waiting(TICKETS_CHAT, 77)

    async def test_proof_message_records_delivery(self, tickets, bot, session_factory):
        ticket, _ = await tickets.open_ticket("TOMATRIO", make_user())
        await tickets.confirm(ticket.id, APPROVER_ID)
        await _until_waiting(tickets.collector)

        assert not tickets.collector.offer(make_message(BUYER_ID, "not me"))
        photos = [SimpleNamespace(file_id="small"), SimpleNamespace(file_id="large")]
        proof = make_message(APPROVER_ID, caption="handed over in person", photo=photos)
        assert tickets.collector.offer(proof)
        await tickets.drain()

        [record] = await _records(session_factory)
        assert record.item_id == "TOMATRIO"
        assert record.quantity == 1
        assert record.mention == str(BUYER_ID)
        assert record.photo_url.startswith("http://testserver/uploads/")
        assert record.photo_url.endswith(".jpg")
        bot.get_file.assert_awaited_once_with("large")
        proof.reply_text.assert_awaited_once()

        [delivery_text] = sent_texts(bot, DELIVERY_CHAT)
        assert "handed over in person" in delivery_text
        async with session_factory() as s:
            assert (await get_item(s, "TOMATRIO")).quantity == 9
        assert await _status(session_factory, ticket.id) == TicketStatus.ARCHIVED
        bot.close_forum_topic.assert_awaited_once_with(chat_id=TICKETS_CHAT, message_thread_id=77)

    async def test_timeout_records_default_note(self, tickets, bot, session_factory):
        ticket, _ = await tickets.open_ticket("MR_CARROT", make_user())
        await tickets.confirm(ticket.id, APPROVER_ID)
        await tickets.drain()

        [record] = await _records(session_factory)
        assert record.photo_url is None
        assert TIMEOUT_NOTE in sent_texts(bot, DELIVERY_CHAT)[0]
        assert any("Time is up" in t for t in sent_texts(bot, TICKETS_CHAT))
        assert await _status(session_factory, ticket.id) == TicketStatus.ARCHIVED

    async def test_second_confirm_is_rejected(self, tickets):
        ticket, _ = await tickets.open_ticket("TOMATRIO", make_user())
        await tickets.confirm(ticket.id, APPROVER_ID)
        with pytest.raises(ConflictError):
            await tickets.confirm(ticket.id, APPROVER_ID)

    async def test_deliver_runs_once(self, tickets, session_factory):
        ticket, _ = await tickets.open_ticket("TOMATRIO", make_user())
        async with session_factory() as s, s.begin():
            await s.execute(update(Ticket).where(Ticket.id == ticket.id).values(status=TicketStatus.AWAITING_PROOF))

        first, second = await asyncio.gather(
            tickets.deliver(ticket, "note", None), tickets.deliver(ticket, "note", None)
        )
        assert [r is not None for r in (first, second)].count(True) == 1
        assert len(await _records(session_factory)) == 1

    async def test_delivery_error_is_reported_in_topic(self, tickets, services, bot, session_factory):
        ticket, _ = await tickets.open_ticket("TOMATRIO", make_user())
        await services.config.update(delivery_channel_id=None)
        async with session_factory() as s, s.begin():
            await s.execute(update(Ticket).where(Ticket.id == ticket.id).values(status=TicketStatus.AWAITING_PROOF))

        assert await tickets.deliver(ticket, None, None) is None
        assert any(t.startswith("Error:") for t in sent_texts(bot, TICKETS_CHAT))
        assert await _records(session_factory) == []

    async def test_photo_download_failure_still_delivers(self, tickets, bot, session_factory):
        bot.get_file.side_effect = TelegramError("File is too big")
        ticket, _ = await tickets.open_ticket("TOMATRIO", make_user())
        await tickets.confirm(ticket.id, APPROVER_ID)
        await _until_waiting(tickets.collector)

        proof = make_message(APPROVER_ID, caption="left with the doorman", photo=[SimpleNamespace(file_id="big")])
        assert tickets.collector.offer(proof)
        await tickets.drain()

        [record] = await _records(session_factory)
        assert record.photo_url is None
        assert "left with the doorman" in sent_texts(bot, DELIVERY_CHAT)[0]
        assert await _status(session_factory, ticket.id) == TicketStatus.ARCHIVED
        bot.close_forum_topic.assert_awaited_once()

    async def test_unsent_prompt_still_delivers(self, tickets, bot, session_factory):
        ticket, _ = await tickets.open_ticket("MR_CARROT", make_user())

        def send(**kwargs):
            if kwargs["text"].startswith("Please send the proof"):
                raise TelegramError("Topic closed")
            return SimpleNamespace(message_id=555)

        bot.send_message.side_effect = send
        await tickets.confirm(ticket.id, APPROVER_ID)
        await tickets.drain()

        assert len(await _records(session_factory)) == 1
        assert await _status(session_factory, ticket.id) == TicketStatus.ARCHIVED

    async def test_unrecorded_delivery_still_archives(self, tickets, bot, session_factory, monkeypatch):
        monkeypatch.setattr(
            tickets.deliveries, "create", AsyncMock(side_effect=PersistenceError("Failed to record the delivery."))
        )
        ticket, _ = await tickets.open_ticket("TOMATRIO", make_user())
        await tickets.confirm(ticket.id, APPROVER_ID)
        await tickets.drain()

        assert "An error occurred while processing your request." in sent_texts(bot, TICKETS_CHAT)
        assert await _status(session_factory, ticket.id) == TicketStatus.ARCHIVED
        bot.close_forum_topic.assert_awaited_once()

    async def test_ticket_delivery_tags_client_role(self, tickets, services, bot, session_factory):
        await services.config.update(client_role_id="buyers")
        ticket, _ = await tickets.open_ticket("TOMATRIO", make_user())
        await tickets.confirm(ticket.id, APPROVER_ID)
        await tickets.drain()

        [text] = sent_texts(bot, DELIVERY_CHAT)
        assert text.splitlines()[0] == "@buyers"
        assert "<b>Recipient:</b> @buyers" in text
        [record] = await _records(session_factory)
        assert record.mention == str(BUYER_ID)


class TestClose:
    async def test_close_archives_after_grace(self, tickets, bot, session_factory):
        ticket, _ = await tickets.open_ticket("TOMATRIO", make_user())
        await tickets.close(ticket.id)
        assert await _status(session_factory, ticket.id) == TicketStatus.ARCHIVED
        await tickets.drain()
        bot.close_forum_topic.assert_awaited_once()

    async def test_close_twice(self, tickets):
        ticket, _ = await tickets.open_ticket("TOMATRIO", make_user())
        await tickets.close(ticket.id)
        with pytest.raises(ConflictError):
            await tickets.close(ticket.id)

    async def test_close_unknown(self, tickets):
        with pytest.raises(NotFoundError):
            await tickets.close("nope")

    async def test_confirm_after_close(self, tickets):
        ticket, _ = await tickets.open_ticket("TOMATRIO", make_user())
        await tickets.close(ticket.id)
        with pytest.raises(ConflictError):
            await tickets.confirm(ticket.id, APPROVER_ID)


class TestSweep:
    async def test_archives_only_stale_tickets(self, tickets, bot, session_factory):
        old, _ = await tickets.open_ticket("TOMATRIO", make_user())
        fresh, _ = await tickets.open_ticket("MR_CARROT", make_user())
        async with session_factory() as s, s.begin():
            await s.execute(
                update(Ticket)
                .where(Ticket.id == old.id)
                .values(created_at=datetime(2020, 1, 1, tzinfo=timezone.utc))
            )

        assert await tickets.sweep_stale() == 1
        assert await _status(session_factory, old.id) == TicketStatus.ARCHIVED
        assert await _status(session_factory, fresh.id) == TicketStatus.OPEN
        assert await tickets.sweep_stale() == 0
        bot.close_forum_topic.assert_awaited_once()


class TestCollector:
    async def test_wait_times_out(self):
        collector = ProofCollector()
        assert await collector.wait(1, 2, 3, 0.01) is None
        assert not collector.is_waiting(1, 2)

    async def test_one_collection_per_topic(self):
        collector = ProofCollector()
        waiter = asyncio.ensure_future(collector.wait(TICKETS_CHAT, 77, APPROVER_ID, 1))
        await asyncio.sleep(0)
        with pytest.raises(ConflictError):
            await collector.wait(TICKETS_CHAT, 77, APPROVER_ID, 1)
        assert not collector.offer(make_message(APPROVER_ID, "other topic", thread_id=78))
        message = make_message(APPROVER_ID, "done")
        assert collector.offer(message)
        assert await waiter is message


class TestApprover:
    async def test_configured_admin_wins(self, services, bot):
        assert await resolve_approver(bot, services.config, admin_id=5) == 5
        bot.get_chat_administrators.assert_not_awaited()

    async def test_group_owner(self, services, bot):
        await services.config.update(guild_id=str(TICKETS_CHAT))
        assert await resolve_approver(bot, services.config) == APPROVER_ID

    async def test_unknown_without_group(self, services, bot):
        assert await resolve_approver(bot, services.config) is None
