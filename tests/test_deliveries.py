from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from telegram.error import TelegramError

from storefront_bot.catalog import get_item
from storefront_bot.deliveries import compose_delivery, list_deliveries, upload_filename
from storefront_bot.errors import NotFoundError, ValidationError
from storefront_bot.models import DeliveryRecord, StockItem

from tests.factories import DELIVERY_CHAT, sent_texts


@pytest_asyncio.fixture
async def deliveries(services, stocked):
    await services.config.update(delivery_channel_id=str(DELIVERY_CHAT), client_role_id="buyers")
    return services.deliveries


async def _record_count(session_factory) -> int:
    async with session_factory() as s:
        return await s.scalar(select(func.count()).select_from(DeliveryRecord))


async def _quantity(session_factory, item_id: str) -> int:
    async with session_factory() as s:
        return (await get_item(s, item_id)).quantity


class TestCreate:
    async def test_posts_records_and_decrements(self, deliveries, bot, session_factory):
        record = await deliveries.create(
            "TOMATRIO", 2, recipient="123456789", mention="123456789", note="left at the door"
        )
        assert (record.item_id, record.item_name, record.quantity) == ("TOMATRIO", "TOMATRIO", 2)
        assert record.message_sent is True
        assert record.message_status == 200
        assert record.mention == "123456789"
        assert record.timestamp is not None
        assert await _quantity(session_factory, "TOMATRIO") == 8

        [text] = sent_texts(bot, DELIVERY_CHAT)
        assert 'href="tg://user?id=123456789"' in text
        assert "left at the door" in text
        assert "R$0.50" in text

    async def test_send_failure_still_records(self, deliveries, bot, session_factory):
        bot.send_message.side_effect = TelegramError("Timed out")
        record = await deliveries.create("MR_CARROT", 1)
        assert record.message_sent is False
        assert record.message_status == 500
        assert await _record_count(session_factory) == 1
        assert await _quantity(session_factory, "MR_CARROT") == 4

    async def test_stock_may_go_negative(self, deliveries, session_factory):
        await deliveries.create("MR_CARROT", 7)
        assert await _quantity(session_factory, "MR_CARROT") == -2

    async def test_requires_delivery_channel(self, services, stocked, bot, session_factory):
        with pytest.raises(ValidationError):
            await services.deliveries.create("TOMATRIO", 1)
        bot.send_message.assert_not_awaited()
        assert await _record_count(session_factory) == 0

    async def test_unknown_item(self, deliveries, bot, session_factory):
        with pytest.raises(NotFoundError):
            await deliveries.create("GHOST", 1)
        bot.send_message.assert_not_awaited()
        assert await _record_count(session_factory) == 0

    async def test_list_newest_first(self, deliveries, session_factory):
        first = await deliveries.create("TOMATRIO", 1)
        second = await deliveries.create("MR_CARROT", 1)
        async with session_factory() as s:
            ids = [r.id for r in await list_deliveries(s)]
        assert ids == [second.id, first.id]


class TestCompose:
    ITEM = StockItem(id="MANGO", name="MANGO", emoji="🥭", quantity=3, price=Decimal("0.70"), max=300)

    def test_role_is_the_fallback_recipient(self):
        text = compose_delivery(self.ITEM, 1, None, None, None, "buyers", "DOLLYA STORE", "R$")
        assert text.splitlines()[0] == "@buyers"
        assert "<b>Recipient:</b> @buyers" in text

    def test_without_any_recipient(self):
        text = compose_delivery(self.ITEM, 3, None, None, None, None, "DOLLYA STORE", "R$")
        assert text.splitlines()[0] == "New delivery registered!"
        assert "Not configured" in text
        assert "<b>Quantity:</b> 3" in text

    def test_note_and_photo_are_escaped(self):
        text = compose_delivery(
            self.ITEM, 1, "<b>hi</b>", "http://x/uploads/a.png", "@someone", None, "DOLLYA STORE", "R$"
        )
        assert "&lt;b&gt;hi&lt;/b&gt;" in text
        assert 'href="http://x/uploads/a.png"' in text
        assert text.splitlines()[0] == "@someone"


def test_upload_filename_keeps_suffix():
    name = upload_filename(".png")
    assert name.endswith(".png")
    assert name != upload_filename(".png")
