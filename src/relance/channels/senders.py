from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Any

import requests

from relance.channels.base import ChannelDispatcher, DispatchError, Recipient
from relance.channels.twilio import TwilioClient, TwilioError
from relance.config import ChannelsConfig
from relance.domain.stages import Channel

DEFAULT_TEMPLATES = {
    "request_doc": (
        "Bonjour {client_name}, il nous manque le justificatif de l'opération "
        "du {date} ({label}) d'un montant de {amount} EUR. Pouvez-vous nous l'envoyer en réponse ?"
    ),
    "reminder": (
        "Bonjour {client_name}, petit rappel : le justificatif de l'opération du {date} "
        "({amount} EUR) est toujours manquant."
    ),
    "last_call": (
        "Bonjour {client_name}, sans justificatif pour l'opération du {date} ({amount} EUR), "
        "nous devrons la signaler lors de la clôture."
    ),
}


def render_template(template_id: str, config: Mapping[str, Any], recipient: Recipient) -> str:
    template = config.get("body") or DEFAULT_TEMPLATES.get(template_id)
    if not template:
        raise DispatchError(f"Unknown template {template_id!r} and no body in step config.")
    try:
        return str(template).format_map(recipient.template_context())
    except (KeyError, IndexError, ValueError) as exc:
        raise DispatchError(f"Template {template_id!r} cannot be rendered: {exc}") from exc


def _require_phone(recipient: Recipient) -> str:
    if not recipient.phone:
        raise DispatchError(f"Client {recipient.client_id} has no phone number.")
    return recipient.phone


class MessageSender:
    def __init__(self, client: TwilioClient) -> None:
        self.client = client

    def send(self, template_id: str, config: Mapping[str, Any], recipient: Recipient) -> str:
        body = render_template(template_id, config, recipient)
        try:
            return self.client.send_text(_require_phone(recipient), body).sid
        except TwilioError as exc:
            raise DispatchError(str(exc)) from exc


class TemplatedMessageSender:
    """Sends a pre-approved content template; `template_id` is the content SID."""

    def __init__(self, client: TwilioClient) -> None:
        self.client = client

    def send(self, template_id: str, config: Mapping[str, Any], recipient: Recipient) -> str:
        context = recipient.template_context()
        mapping = config.get("variables") or {"1": "client_name", "2": "date", "3": "amount"}
        try:
            variables = {str(slot): context[name] for slot, name in mapping.items()}
        except KeyError as exc:
            raise DispatchError(f"Unknown template variable {exc} for {template_id!r}.") from exc
        try:
            return self.client.send_template(_require_phone(recipient), template_id, variables).sid
        except TwilioError as exc:
            raise DispatchError(str(exc)) from exc


class VoiceSender:
    """Delivers a voice note whose audio was rendered upstream."""

    def __init__(self, client: TwilioClient) -> None:
        self.client = client

    def send(self, template_id: str, config: Mapping[str, Any], recipient: Recipient) -> str:
        audio_url = config.get("audio_url")
        if not audio_url:
            raise DispatchError(f"Voice step {template_id!r} has no audio_url in its config.")
        try:
            return self.client.send_media(_require_phone(recipient), str(audio_url)).sid
        except TwilioError as exc:
            raise DispatchError(str(exc)) from exc


class NotificationSender:
    """Posts the reminder to an internal webhook (accountant inbox, chat, etc.)."""

    def __init__(self, webhook_url: str, timeout: int = 30) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.session = requests.Session()

    def send(self, template_id: str, config: Mapping[str, Any], recipient: Recipient) -> str:
        payload = {
            "template_id": template_id,
            "client_id": recipient.client_id,
            "line_id": recipient.line.line_id,
            "text": render_template(template_id, config, recipient),
        }
        url = config.get("webhook_url") or self.webhook_url
        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise DispatchError(f"Notification webhook failed: {exc}") from exc
        if response.status_code >= 400:
            raise DispatchError(f"Notification webhook error {response.status_code}: {response.text}")
        return response.headers.get("X-Request-Id") or f"notification:{recipient.line.line_id}"


def build_dispatcher(channels: ChannelsConfig) -> ChannelDispatcher:
    """Wire one sender per configured channel; unconfigured channels fail at send time."""
    dispatcher = ChannelDispatcher()
    account_sid = os.getenv("TWILIO_ACCOUNT_SID")
    auth_token = os.getenv("TWILIO_AUTH_TOKEN")
    if channels.twilio_from_number and account_sid and auth_token:
        client = TwilioClient(account_sid, auth_token, channels.twilio_from_number)
        dispatcher.register(Channel.MESSAGE, MessageSender(client))
        dispatcher.register(Channel.TEMPLATED_MESSAGE, TemplatedMessageSender(client))
        dispatcher.register(Channel.VOICE, VoiceSender(client))
    if channels.notification_webhook_url:
        dispatcher.register(Channel.NOTIFICATION, NotificationSender(channels.notification_webhook_url))
    return dispatcher
