"""Messaging REST API client.

Implements the access token and conversation calls of the Messaging for
In-App and Web API on top of a single ``httpx.AsyncClient``.

Usage:
    async with MessagingApiClient(config.messaging) as api:
        ctx = SessionContext()
        grant = await api.fetch_fresh_token(ctx)
"""

from __future__ import annotations

from typing import Any, Optional

import httpx

from messaging_client.config import MessagingConfig
from messaging_client.core.errors import AuthError, TransportError
from messaging_client.core.session import SessionContext
from messaging_client.log import get_logger
from messaging_client.messaging.base import (
    AccessGrant,
    AccessProvider,
    ConversationListing,
    ConversationTransport,
    OpenConversation,
)
from messaging_client.messaging.models import OutboundMessage

logger = get_logger(__name__)

API_PREFIX = "/iamessage/api/v2"


class MessagingApiClient(AccessProvider, ConversationTransport):
    """Async client for the messaging REST endpoints."""

    def __init__(self, config: MessagingConfig, client: Optional[httpx.AsyncClient] = None):
        self._config = config
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            timeout=config.timeout,
        )

    async def __aenter__(self) -> "MessagingApiClient":
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    def _headers(self, ctx: Optional[SessionContext] = None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if ctx is not None:
            headers.update(ctx.auth_headers)
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        ctx: Optional[SessionContext] = None,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> Any:
        """Make an API request, raising TransportError for error statuses."""
        try:
            response = await self._client.request(
                method=method,
                url=f"{API_PREFIX}{path}",
                headers=self._headers(ctx),
                json=json,
                params=params,
            )
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {path} failed: {e}", status_code=0) from e

        if response.status_code >= 400:
            details: Any = None
            try:
                details = response.json()
                message = details.get("message", response.text) if isinstance(details, dict) else response.text
            except ValueError:
                message = response.text
            raise TransportError(message or response.reason_phrase, status_code=response.status_code, details=details)

        if response.status_code == 204 or not response.content:
            return {}

        return response.json()

    # Access tokens
    async def fetch_fresh_token(self, ctx: SessionContext) -> AccessGrant:
        payload = {
            "orgId": self._config.org_id,
            "esDeveloperName": self._config.es_developer_name,
            "capabilitiesVersion": self._config.capabilities_version,
            "platform": self._config.platform,
            "context": {
                "appName": self._config.app_name,
                "clientVersion": self._config.client_version,
            },
        }
        try:
            data = await self._request("POST", "/authorization/unauthenticated/access-token", json=payload)
        except TransportError as e:
            raise AuthError(f"Unauthenticated access token request failed: {e.message}", e.status_code, e.details) from e

        token = data.get("accessToken") if isinstance(data, dict) else None
        if not token:
            raise AuthError("Unauthenticated access token response has no accessToken", details=data)

        logger.debug("fresh_token_fetched")
        return AccessGrant(
            token=token,
            last_event_id=data.get("lastEventId"),
            configuration=(data.get("context") or {}).get("configuration") or {},
        )

    async def fetch_continuation_token(self, ctx: SessionContext) -> AccessGrant:
        try:
            data = await self._request("GET", "/authorization/continuation-access-token", ctx=ctx)
        except TransportError as e:
            raise AuthError(f"Continuation access token request failed: {e.message}", e.status_code, e.details) from e

        token = data.get("accessToken") if isinstance(data, dict) else None
        if not token:
            raise AuthError("Continuation access token response has no accessToken", details=data)

        logger.debug("continuation_token_fetched")
        return AccessGrant(token=token, last_event_id=data.get("lastEventId"))

    # Conversations
    async def create_conversation(self, ctx: SessionContext) -> None:
        payload: dict[str, Any] = {
            "conversationId": ctx.conversation_id,
            "esDeveloperName": self._config.es_developer_name,
        }
        if self._config.routing_attributes:
            payload["routingAttributes"] = self._config.routing_attributes
        if self._config.language:
            payload["language"] = self._config.language
        await self._request("POST", "/conversation", ctx=ctx, json=payload)

    async def list_open_conversations(self, ctx: SessionContext) -> ConversationListing:
        data = await self._request(
            "GET",
            "/conversation/list",
            ctx=ctx,
            params={"inclClosedConvs": "false", "limit": self._config.list_entries_limit},
        )
        conversations = [
            OpenConversation(
                conversation_id=item["conversationId"],
                start_timestamp=item.get("startTimestamp") or 0,
            )
            for item in data.get("conversations") or []
            if item.get("conversationId")
        ]
        return ConversationListing(
            count=data.get("openConversationsFound", len(conversations)),
            conversations=conversations,
        )

    async def list_entries(self, ctx: SessionContext) -> list[dict[str, Any]]:
        data = await self._request(
            "GET",
            f"/conversation/{ctx.conversation_id}/entries",
            ctx=ctx,
            params={"limit": self._config.list_entries_limit, "direction": "FromEnd"},
        )
        if isinstance(data, list):
            return data
        entries = data.get("conversationEntries")
        if not isinstance(entries, list):
            raise TransportError(
                "Conversation entries response has no conversationEntries list", status_code=500, details=data
            )
        return entries

    async def close_conversation(self, ctx: SessionContext) -> None:
        await self._request(
            "DELETE",
            f"/conversation/{ctx.conversation_id}",
            ctx=ctx,
            params={"esDeveloperName": self._config.es_developer_name},
        )

    async def send_message(self, ctx: SessionContext, message: OutboundMessage) -> None:
        payload: dict[str, Any] = {
            "message": {
                "id": message.message_id,
                "messageType": "StaticContentMessage",
                "staticContent": {"formatType": "Text", "text": message.text},
            },
            "esDeveloperName": self._config.es_developer_name,
            "isNewMessagingSession": message.is_new_messaging_session,
        }
        if message.in_reply_to_message_id:
            payload["message"]["inReplyToMessageId"] = message.in_reply_to_message_id
        if message.routing_attributes:
            payload["routingAttributes"] = message.routing_attributes
        if message.language:
            payload["language"] = message.language
        await self._request("POST", f"/conversation/{ctx.conversation_id}/message", ctx=ctx, json=payload)
