"""
Contact messaging for re-engagement tasks.

GoHighLevelMessenger talks to the LeadConnector REST API with httpx.
"""

from enum import Enum
from typing import Any, Protocol

import httpx
from structlog import get_logger

from botmeter.config import settings
from botmeter.exceptions import MessagingError
from botmeter.models.domain import ContactInfo, SentMessage

logger = get_logger(__name__)


class MessageChannel(str, Enum):
    """Outbound message types accepted by GoHighLevel."""

    SMS = "SMS"
    EMAIL = "Email"
    WHATSAPP = "WhatsApp"
    INSTAGRAM = "IG"
    FACEBOOK = "FB"
    CUSTOM = "Custom"
    LIVE_CHAT = "Live_Chat"
    CALL = "CALL"


# lastMessageType values reported on conversations
_CONVERSATION_MESSAGE_TYPES: dict[str, MessageChannel] = {
    "TYPE_SMS": MessageChannel.SMS,
    "TYPE_EMAIL": MessageChannel.EMAIL,
    "TYPE_WHATSAPP": MessageChannel.WHATSAPP,
    "TYPE_INSTAGRAM": MessageChannel.INSTAGRAM,
    "TYPE_FACEBOOK": MessageChannel.FACEBOOK,
    "TYPE_CUSTOM_SMS": MessageChannel.SMS,
    "TYPE_CUSTOM_EMAIL": MessageChannel.EMAIL,
    "TYPE_LIVE_CHAT": MessageChannel.LIVE_CHAT,
    "TYPE_CALL": MessageChannel.CALL,
}


def map_conversation_message_type(message_type: str | None) -> MessageChannel:
    """Channel to reply on, given a conversation's last message type (SMS when unknown)."""
    if not message_type:
        return MessageChannel.SMS
    return _CONVERSATION_MESSAGE_TYPES.get(message_type.upper(), MessageChannel.SMS)


class ContactMessenger(Protocol):
    """What a re-engagement worker needs from a messaging provider."""

    async def get_contact(self, contact_id: str, location_id: str) -> ContactInfo | None:
        ...

    async def get_last_message_channel(
        self, contact_id: str, location_id: str
    ) -> MessageChannel | None:
        ...

    async def send_message(
        self, channel: MessageChannel, contact_id: str, location_id: str, message: str
    ) -> SentMessage:
        ...


class GoHighLevelMessenger:
    """GoHighLevel (LeadConnector) REST client."""

    def __init__(
        self,
        access_token: str | None = None,
        base_url: str | None = None,
        api_version: str | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.access_token = access_token or settings.gohighlevel_access_token
        self.base_url = (base_url or settings.gohighlevel_api_base).rstrip("/")
        self.api_version = api_version or settings.gohighlevel_api_version
        self.timeout = timeout or settings.gohighlevel_timeout_seconds
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={
                    "Authorization": f"Bearer {self.access_token}",
                    "Version": self.api_version,
                    "Accept": "application/json",
                },
            )
        return self._http_client

    async def get_contact(self, contact_id: str, location_id: str) -> ContactInfo | None:
        """Fetch a contact; None when the provider does not know it."""
        data = await self._request(
            "get_contact",
            "GET",
            f"/contacts/{contact_id}",
            params={"locationId": location_id},
            allow_not_found=True,
        )
        if data is None:
            return None

        contact = data.get("contact") or {}
        return ContactInfo(
            contact_id=contact.get("id", contact_id),
            tags=tuple(contact.get("tags") or ()),
        )

    async def get_last_message_channel(
        self, contact_id: str, location_id: str
    ) -> MessageChannel | None:
        """Channel of the contact's most recent conversation, if any."""
        data = await self._request(
            "search_conversations",
            "GET",
            "/conversations/search",
            params={
                "contactId": contact_id,
                "locationId": location_id,
                "limit": 1,
                "sortBy": "last_message_date",
                "sort": "desc",
            },
        )
        conversations = (data or {}).get("conversations") or []
        if not conversations:
            return None
        return map_conversation_message_type(conversations[0].get("lastMessageType"))

    async def send_message(
        self, channel: MessageChannel, contact_id: str, location_id: str, message: str
    ) -> SentMessage:
        """Send a message to a contact on the given channel."""
        data = await self._request(
            "send_message",
            "POST",
            "/conversations/messages",
            json={
                "type": channel.value,
                "contactId": contact_id,
                "locationId": location_id,
                "message": message,
            },
        )
        return SentMessage(
            message_id=(data or {}).get("messageId"),
            conversation_id=(data or {}).get("conversationId"),
        )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        allow_not_found: bool = False,
        **kwargs: Any,
    ) -> dict[str, Any] | None:
        try:
            response = await self.http_client.request(method, path, **kwargs)
            if allow_not_found and response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json()  # type: ignore[no-any-return]
        except httpx.HTTPStatusError as e:
            logger.error(
                "gohighlevel_request_failed",
                operation=operation,
                status=e.response.status_code,
                text=e.response.text,
            )
            raise MessagingError(operation, e.response.status_code, e.response.text) from e
        except httpx.HTTPError as e:
            logger.error("gohighlevel_request_error", operation=operation, error=str(e))
            raise MessagingError(operation, None, str(e)) from e
