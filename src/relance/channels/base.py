from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from relance.domain.models import Client, Line
from relance.domain.stages import Channel


class DispatchError(RuntimeError):
    pass


@dataclass(frozen=True)
class Recipient:
    client_id: str
    name: str
    phone: str | None
    email: str | None
    line: Line

    @classmethod
    def for_line(cls, client: Client, line: Line) -> Recipient:
        return cls(
            client_id=client.client_id,
            name=client.contact_name or client.name,
            phone=client.phone,
            email=client.email,
            line=line,
        )

    def template_context(self) -> dict[str, str]:
        return {
            "client_name": self.name,
            "amount": f"{self.line.amount:.2f}",
            "date": self.line.transaction_date.strftime("%d/%m/%Y"),
            "label": self.line.label or "",
            "line_id": self.line.line_id,
        }


class ChannelSender(Protocol):
    def send(self, template_id: str, config: Mapping[str, Any], recipient: Recipient) -> str: ...


class ChannelDispatcher:
    """Routes a step to the sender registered for its channel."""

    def __init__(self, senders: Mapping[Channel, ChannelSender] | None = None) -> None:
        self._senders: dict[Channel, ChannelSender] = dict(senders or {})

    def register(self, channel: Channel, sender: ChannelSender) -> None:
        self._senders[Channel(channel)] = sender

    @property
    def channels(self) -> list[Channel]:
        return sorted(self._senders, key=lambda channel: channel.value)

    def send(
        self,
        channel: Channel,
        template_id: str,
        config: Mapping[str, Any],
        recipient: Recipient,
    ) -> str:
        sender = self._senders.get(Channel(channel))
        if sender is None:
            raise DispatchError(f"No sender configured for channel {Channel(channel).value}.")
        try:
            return sender.send(template_id, config, recipient)
        except DispatchError:
            raise
        except Exception as exc:
            raise DispatchError(f"{Channel(channel).value} sender failed: {exc}") from exc
