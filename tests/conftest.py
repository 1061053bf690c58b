# tests/conftest.py
from __future__ import annotations

from decimal import Decimal
from types import SimpleNamespace
from typing import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from telegram.constants import ChatMemberStatus

from storefront_bot.config import Settings
from storefront_bot.models import StockItem, init_db, make_session_factory
from storefront_bot.services import build_services

from tests.factories import APPROVER_ID


# ==========================
# Fresh SQLite file per test
# ==========================
@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", future=True)
    await init_db(engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        bot_token="123456:TEST",
        database_url="sqlite+aiosqlite://",
        public_base_url="http://testserver",
        static_dir=tmp_path / "public",
        uploads_dir=tmp_path / "public" / "uploads",
    )


# ==========================
# Telegram Bot double
# ==========================
@pytest.fixture
def bot() -> AsyncMock:
    bot = AsyncMock()
    bot.send_message.return_value = SimpleNamespace(message_id=555)
    bot.edit_message_text.return_value = True
    bot.delete_message.return_value = True
    bot.get_chat_administrators.return_value = [
        SimpleNamespace(status=ChatMemberStatus.ADMINISTRATOR, user=SimpleNamespace(id=99)),
        SimpleNamespace(status=ChatMemberStatus.OWNER, user=SimpleNamespace(id=APPROVER_ID)),
    ]
    bot.create_forum_topic.return_value = SimpleNamespace(message_thread_id=77, name="topic")
    bot.create_chat_invite_link.return_value = SimpleNamespace(invite_link="https://t.me/+invite")
    bot.close_forum_topic.return_value = True
    bot.get_file.return_value = SimpleNamespace(download_to_drive=AsyncMock())
    return bot


@pytest_asyncio.fixture
async def services(settings, bot, session_factory):
    svc = build_services(settings, bot, session_factory)
    await svc.config.load()
    svc.refresher.base_delay = 0
    tickets = svc.tickets
    tickets.proof_window = 0.2
    tickets.delivered_grace = 0
    tickets.close_grace = 0
    try:
        yield svc
    finally:
        await svc.tickets.aclose()
        await svc.refresher.drain()


@pytest_asyncio.fixture
async def stocked(session_factory):
    async with session_factory() as s, s.begin():
        s.add_all(
            [
                StockItem(id="TOMATRIO", name="TOMATRIO", emoji="🍅", quantity=10, price=Decimal("0.50"), max=300),
                StockItem(id="MANGO", name="MANGO", emoji="🥭", quantity=0, price=Decimal("0.70"), max=300),
                StockItem(id="MR_CARROT", name="MR CARROT", emoji="🥕", quantity=5, price=Decimal("0.40"), max=150),
            ]
        )
