from typing import Any, Dict

import httpx

from kodi.core.config import settings
from kodi.plugins.pms.utils.phone import to_international
from kodi.plugins.sms.services.providers.base import BaseProvider


class TextSmsProvider(BaseProvider):
    """TextSMS (Kenya) bulk SMS gateway."""

    name = "textsms"

    def __init__(
        self,
        api_key: str | None = None,
        partner_id: str | None = None,
        sender_id: str | None = None,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(api_key or settings.TEXTSMS_API_KEY)
        self.partner_id = partner_id or settings.TEXTSMS_PARTNER_ID
        self.sender_id = sender_id or settings.TEXTSMS_SENDER_ID
        self.send_url = base_url or settings.TEXTSMS_API_URL
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.partner_id)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport, timeout=10)

    def sanitize_payload(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "apikey": self.api_key,
            "partnerID": self.partner_id,
            "message": data["message"].strip(),
            "shortcode": self.sender_id,
            "mobile": to_international(data["to"]),
        }

    async def send(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with self._client() as client:
            resp = await client.post(self.send_url, json=self.sanitize_payload(payload))
            resp.raise_for_status()
            return resp.json()

    async def balance(self) -> Dict[str, Any]:
        url = self.send_url.replace("sendsms", "getbalance")
        async with self._client() as client:
            resp = await client.post(url, json={"apikey": self.api_key, "partnerID": self.partner_id})
            resp.raise_for_status()
            return resp.json()

    @staticmethod
    def message_id(response: Dict[str, Any]) -> str | None:
        # {"responses": [{"response-code": 200, "messageid": "...", "mobile": "..."}]}
        responses = response.get("responses") or []
        if not responses:
            return None
        message_id = responses[0].get("messageid")
        return str(message_id) if message_id is not None else None
