from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import requests

BASE_URL = "https://api.twilio.com/2010-04-01"


@dataclass(frozen=True)
class TwilioMessage:
    sid: str
    status: str


class TwilioError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TwilioClient:
    """WhatsApp messaging through the Twilio Messages resource."""

    def __init__(self, account_sid: str, auth_token: str, from_number: str, timeout: int = 30) -> None:
        self.account_sid = account_sid
        self.from_number = from_number
        self.timeout = timeout
        self.session = requests.Session()
        self.session.auth = (account_sid, auth_token)

    def send_text(self, to: str, body: str) -> TwilioMessage:
        return self._send(to, {"Body": body})

    def send_media(self, to: str, media_url: str, body: str | None = None) -> TwilioMessage:
        payload = {"MediaUrl": media_url}
        if body:
            payload["Body"] = body
        return self._send(to, payload)

    def send_template(self, to: str, content_sid: str, variables: dict[str, str]) -> TwilioMessage:
        return self._send(
            to,
            {"ContentSid": content_sid, "ContentVariables": json.dumps(variables, sort_keys=True)},
        )

    def _send(self, to: str, fields: dict[str, str]) -> TwilioMessage:
        data = {"From": f"whatsapp:{self.from_number}", "To": f"whatsapp:{to}", **fields}
        payload = self._request("POST", f"/Accounts/{self.account_sid}/Messages.json", data=data)
        sid = payload.get("sid") if isinstance(payload, dict) else None
        if not sid:
            raise TwilioError("Twilio response did not include a message sid.")
        return TwilioMessage(sid=sid, status=payload.get("status") or "")

    def _request(self, method: str, path: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{BASE_URL}{path}"
        try:
            response = self.session.request(method, url, data=data, timeout=self.timeout)
        except requests.RequestException as exc:
            raise TwilioError(f"Twilio request failed: {exc}") from exc
        if response.status_code >= 400:
            raise TwilioError(
                f"Twilio error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise TwilioError(f"Twilio returned a non-JSON body: {response.text[:200]}") from exc
