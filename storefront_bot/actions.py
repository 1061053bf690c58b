from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Dict, Optional, Type, Union

from telegram import InlineKeyboardButton, InlineKeyboardMarkup

BUY_ITEM = "buy_item_button"


@dataclass(frozen=True)
class BuyItem:
    prefix: ClassVar[str] = BUY_ITEM

    @property
    def data(self) -> str:
        return self.prefix


@dataclass(frozen=True)
class SelectItem:
    item_id: str
    prefix: ClassVar[str] = "select_item_to_buy"

    @property
    def data(self) -> str:
        return f"{self.prefix}:{self.item_id}"


@dataclass(frozen=True)
class ConfirmDelivery:
    ticket_id: str
    prefix: ClassVar[str] = "confirm_delivery"

    @property
    def data(self) -> str:
        return f"{self.prefix}:{self.ticket_id}"


@dataclass(frozen=True)
class CloseTicket:
    ticket_id: str
    prefix: ClassVar[str] = "close_ticket"

    @property
    def data(self) -> str:
        return f"{self.prefix}:{self.ticket_id}"


Action = Union[BuyItem, SelectItem, ConfirmDelivery, CloseTicket]
ACTION_TYPES = (BuyItem, SelectItem, ConfirmDelivery, CloseTicket)

_WITH_ARGUMENT: Dict[str, Type] = {cls.prefix: cls for cls in (SelectItem, ConfirmDelivery, CloseTicket)}


def parse_action(data: str) -> Optional[Action]:
    if data == BUY_ITEM:
        return BuyItem()
    prefix, sep, arg = data.partition(":")
    factory = _WITH_ARGUMENT.get(prefix)
    if factory is None or not sep or not arg:
        return None
    return factory(arg)


def button(label: str, action: Action) -> InlineKeyboardButton:
    return InlineKeyboardButton(label, callback_data=action.data)


def single_button(label: str, action: Action) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([[button(label, action)]])
