from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from telegram import Bot

from .catalog import PriceBoard, PriceBoardRefresher
from .config import ConfigStore, Settings
from .deliveries import DeliveryService
from .tickets import TicketWorkflow


@dataclass
class Services:
    settings: Settings
    bot: Bot
    session_factory: async_sessionmaker[AsyncSession]
    config: ConfigStore
    board: PriceBoard
    refresher: PriceBoardRefresher
    deliveries: DeliveryService
    tickets: TicketWorkflow


def build_services(settings: Settings, bot: Bot, session_factory: async_sessionmaker[AsyncSession]) -> Services:
    config = ConfigStore(session_factory)
    board = PriceBoard(bot, session_factory, config, settings.store_name, settings.currency)
    refresher = PriceBoardRefresher(board)
    deliveries = DeliveryService(bot, session_factory, config, refresher, settings.store_name, settings.currency)
    tickets = TicketWorkflow(
        bot,
        session_factory,
        config,
        deliveries,
        uploads_dir=settings.uploads_dir,
        public_base_url=settings.public_base_url,
        admin_id=settings.admin_telegram_id,
    )
    return Services(
        settings=settings,
        bot=bot,
        session_factory=session_factory,
        config=config,
        board=board,
        refresher=refresher,
        deliveries=deliveries,
        tickets=tickets,
    )
