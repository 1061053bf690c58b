from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .models import Configuration

LOG = logging.getLogger("storefront_bot.config")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    # httpx logs every Bot API call at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def to_async_url(url: str) -> str:
    # SQLAlchemy async Postgres requires the async driver.
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def _env(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


def _optional_int(raw: str) -> Optional[int]:
    return int(raw) if raw else None


@dataclass(frozen=True)
class Settings:
    bot_token: str
    database_url: str
    port: int = 3000
    public_base_url: str = "http://localhost:3000"
    static_dir: Path = Path("public")
    uploads_dir: Path = Path("public/uploads")
    admin_telegram_id: Optional[int] = None
    store_name: str = "DOLLYA STORE"
    currency: str = "R$"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        token = _env("BOT_TOKEN")
        db_url = _env("DATABASE_URL")
        if not token or not db_url:
            raise SystemExit("Missing required environment: DATABASE_URL and BOT_TOKEN must both be set")
        port = int(_env("PORT", "3000"))
        static_dir = Path(_env("STATIC_DIR", "public"))
        return cls(
            bot_token=token,
            database_url=to_async_url(db_url),
            port=port,
            public_base_url=_env("PUBLIC_BASE_URL", f"http://localhost:{port}").rstrip("/"),
            static_dir=static_dir,
            uploads_dir=Path(_env("UPLOADS_DIR", str(static_dir / "uploads"))),
            admin_telegram_id=_optional_int(_env("ADMIN_TELEGRAM_ID")),
            store_name=_env("STORE_NAME", "DOLLYA STORE"),
            currency=_env("CURRENCY", "R$"),
            log_level=_env("LOG_LEVEL", "INFO"),
        )


# ---------- Runtime configuration ----------
_CAMEL = {
    "main_channel_id": "mainChannelId",
    "main_message_id": "mainMessageId",
    "delivery_channel_id": "deliveryChannelId",
    "client_role_id": "clientRoleId",
    "guild_id": "guildId",
}


@dataclass
class StoreConfig:
    main_channel_id: Optional[str] = None
    main_message_id: Optional[str] = None
    delivery_channel_id: Optional[str] = None
    client_role_id: Optional[str] = None
    guild_id: Optional[str] = None
    is_managed_externally: bool = field(default=False, compare=False)

    @classmethod
    def editable_fields(cls) -> tuple:
        return tuple(f.name for f in fields(cls) if f.name != "is_managed_externally")

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {_CAMEL[name]: getattr(self, name) for name in self.editable_fields()}
        out["isManagedExternally"] = self.is_managed_externally
        return out


def external_config_from_env() -> Optional[StoreConfig]:
    main_channel = _env("MAIN_CHANNEL_ID")
    delivery_channel = _env("DELIVERY_CHANNEL_ID")
    if not (main_channel and delivery_channel):
        return None
    return StoreConfig(
        main_channel_id=main_channel,
        main_message_id=_env("MAIN_MESSAGE_ID") or None,
        delivery_channel_id=delivery_channel,
        client_role_id=_env("CLIENT_ROLE_ID") or None,
        guild_id=_env("GUILD_ID") or None,
        is_managed_externally=True,
    )


class ConfigStore:
    """Holds the one live StoreConfig; `update` is the only way to change it."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self.current = StoreConfig()

    async def load(self, external: Optional[StoreConfig] = None) -> StoreConfig:
        if external is not None:
            LOG.info("Loading configuration from environment variables.")
            self.current = external
            return self.current

        LOG.info("Loading configuration from the database.")
        async with self._session_factory() as s, s.begin():
            row = await s.get(Configuration, 1)
            if row is None:
                s.add(Configuration(id=1))
                LOG.info("No configuration found; created the default row.")
                self.current = StoreConfig()
            else:
                self.current = StoreConfig(
                    **{name: getattr(row, name) for name in StoreConfig.editable_fields()}
                )
        return self.current

    async def update(self, **changes: Any) -> StoreConfig:
        unknown = set(changes) - set(StoreConfig.editable_fields())
        if unknown:
            raise TypeError(f"unknown configuration fields: {sorted(unknown)}")
        for name, value in changes.items():
            setattr(self.current, name, None if value in ("", None) else str(value))

        if self.current.is_managed_externally:
            LOG.info("Configuration is managed by environment variables; database save skipped.")
            return self.current

        async with self._session_factory() as s, s.begin():
            row = await s.get(Configuration, 1)
            if row is None:
                row = Configuration(id=1)
                s.add(row)
            for name in StoreConfig.editable_fields():
                setattr(row, name, getattr(self.current, name))
        return self.current
