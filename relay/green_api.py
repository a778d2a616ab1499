import os
from typing import Any, Dict, Optional

import httpx

from .db import Database


class GreenAPIClient:
    """Thin async client for the Green API WhatsApp gateway."""

    def __init__(self, base_url: str, id_instance: str, api_token: str):
        self.base_url = base_url.rstrip("/")
        self.id_instance = id_instance
        self.api_token = api_token

    @classmethod
    def from_env(cls, db: Optional[Database] = None) -> "GreenAPIClient":
        # Prefer DB settings if available, fall back to environment variables
        db = db or Database()
        base_url = db.get_setting("GREEN_API_BASE_URL", None) or os.getenv("GREEN_API_BASE_URL", "https://api.green-api.com")
        id_instance = db.get_setting("GREEN_API_INSTANCE_ID", None) or os.getenv("GREEN_API_INSTANCE_ID", "")
        api_token = db.get_setting("GREEN_API_API_TOKEN", None) or os.getenv("GREEN_API_API_TOKEN", "")
        return cls(base_url=base_url, id_instance=id_instance, api_token=api_token)

    @property
    def configured(self) -> bool:
        return bool(self.id_instance and self.api_token)

    def _url(self, path: str) -> str:
        return f"{self.base_url}/waInstance{self.id_instance}/{path}/{self.api_token}"

    def _url_delete_notification_delete(self, receipt_id: int) -> str:
        # Official: DELETE /waInstance{id}/DeleteNotification/{token}/{receiptId}
        return f"{self.base_url}/waInstance{self.id_instance}/DeleteNotification/{self.api_token}/{receipt_id}"

    async def send_message(self, chat_id: str, message: str, quoted_message_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Send a text message to a chat. With `quoted_message_id` WhatsApp shows it
        as a reply to that message.
        """
        url = self._url("sendMessage")
        payload: Dict[str, Any] = {"chatId": chat_id, "message": message}
        if quoted_message_id:
            payload["quotedMessageId"] = quoted_message_id
        async with httpx.AsyncClient(timeout=30) as client:
            resp = await client.post(url, json=payload)
            resp.raise_for_status()
            return resp.json()

    async def download_file(self, download_url: str) -> bytes:
        """Fetch the media behind a notification's fileMessageData.downloadUrl."""
        async with httpx.AsyncClient(timeout=120, follow_redirects=True) as client:
            resp = await client.get(download_url)
            resp.raise_for_status()
            return resp.content

    async def receive_notification(self) -> Optional[Dict[str, Any]]:
        """
        Long-poll ReceiveNotification. Returns None when the queue is empty.
        """
        url = self._url("ReceiveNotification")
        async with httpx.AsyncClient(timeout=65) as client:
            resp = await client.get(url)
            if resp.status_code == 200 and resp.content:
                # When no notification, API may return null
                return resp.json()
            if resp.status_code == 204:
                return None
            resp.raise_for_status()
            return None

    async def delete_notification(self, receipt_id: int) -> None:
        """
        Acknowledge a notification so it is not delivered again.
        Tries DELETE first, then the POST variant with a JSON body.
        """
        async with httpx.AsyncClient(timeout=30) as client:
            resp = await client.delete(self._url_delete_notification_delete(receipt_id))
            if resp.status_code in (200, 204):
                return
            resp2 = await client.post(self._url("DeleteNotification"), json={"receiptId": receipt_id})
            if resp2.status_code in (200, 204):
                return
            resp2.raise_for_status()

    async def get_state_instance(self) -> str:
        """authorized | notAuthorized | blocked | sleepMode | starting | yellowCard"""
        async with httpx.AsyncClient(timeout=30) as client:
            resp = await client.get(self._url("getStateInstance"))
            resp.raise_for_status()
            return str((resp.json() or {}).get("stateInstance") or "unknown")

    async def get_qr(self) -> Dict[str, Any]:
        """
        Login QR code. Response is {"type": "qrCode", "message": <base64 png>},
        or type "alreadyLogged" / "error".
        """
        async with httpx.AsyncClient(timeout=30) as client:
            resp = await client.get(self._url("qr"))
            resp.raise_for_status()
            return resp.json() or {}
