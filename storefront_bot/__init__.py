"""Storefront bot: Telegram price board, purchase tickets and delivery log, with an HTTP admin panel."""

__version__ = "1.0.0"
