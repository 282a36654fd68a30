import json
from typing import Any, Callable

import httpx
import pytest

from messaging_client.config import MessagingConfig
from messaging_client.core.errors import AuthError, TransportError
from messaging_client.core.session import SessionContext
from messaging_client.messaging.http import MessagingApiClient
from messaging_client.messaging.models import OutboundMessage

BASE_URL = "https://example.my.salesforce-scrt.com"


def _make_config(**overrides: Any) -> MessagingConfig:
    data: dict[str, Any] = {
        "base_url": BASE_URL,
        "org_id": "00D000000000001",
        "es_developer_name": "Web_Deployment",
    }
    data.update(overrides)
    return MessagingConfig(**data)


def _make_api(handler: Callable[[httpx.Request], httpx.Response], **overrides: Any) -> MessagingApiClient:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL)
    return MessagingApiClient(_make_config(**overrides), client=client)


def _context(**overrides: Any) -> SessionContext:
    data: dict[str, Any] = {"conversation_id": "c1", "access_token": "token-1"}
    data.update(overrides)
    return SessionContext(**data)


@pytest.mark.asyncio
async def test_fetch_fresh_token_posts_deployment_details():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "accessToken": "jwt-1",
                "lastEventId": "42",
                "context": {"configuration": {"embeddedServiceConfig": {"name": "Web_Deployment"}}},
            },
        )

    async with _make_api(handler) as api:
        grant = await api.fetch_fresh_token(SessionContext())

    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/iamessage/api/v2/authorization/unauthenticated/access-token"
    body = json.loads(request.content)
    assert body["orgId"] == "00D000000000001"
    assert body["esDeveloperName"] == "Web_Deployment"
    assert body["capabilitiesVersion"] == "1"
    assert body["platform"] == "Web"
    assert "Authorization" not in request.headers

    assert grant.token == "jwt-1"
    assert grant.last_event_id == "42"
    assert grant.configuration == {"embeddedServiceConfig": {"name": "Web_Deployment"}}


@pytest.mark.asyncio
async def test_fetch_fresh_token_failure_raises_auth_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"message": "Invalid org"})

    async with _make_api(handler) as api:
        with pytest.raises(AuthError) as exc_info:
            await api.fetch_fresh_token(SessionContext())

    assert exc_info.value.status_code == 401
    assert "Invalid org" in exc_info.value.message


@pytest.mark.asyncio
async def test_token_response_without_access_token_raises_auth_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"lastEventId": "1"})

    async with _make_api(handler) as api:
        with pytest.raises(AuthError):
            await api.fetch_continuation_token(_context())


@pytest.mark.asyncio
async def test_fetch_continuation_token_sends_current_token():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"accessToken": "jwt-2"})

    async with _make_api(handler) as api:
        grant = await api.fetch_continuation_token(_context(access_token="jwt-1"))

    assert seen[0].method == "GET"
    assert seen[0].url.path == "/iamessage/api/v2/authorization/continuation-access-token"
    assert seen[0].headers["Authorization"] == "Bearer jwt-1"
    assert grant.token == "jwt-2"
    assert grant.last_event_id is None


@pytest.mark.asyncio
async def test_create_conversation_sends_id_and_routing_attributes():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201)

    async with _make_api(handler, routing_attributes={"topic": "billing"}, language="en_US") as api:
        await api.create_conversation(_context())

    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/iamessage/api/v2/conversation"
    body = json.loads(request.content)
    assert body == {
        "conversationId": "c1",
        "esDeveloperName": "Web_Deployment",
        "routingAttributes": {"topic": "billing"},
        "language": "en_US",
    }


@pytest.mark.asyncio
async def test_list_open_conversations():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "openConversationsFound": 2,
                "conversations": [
                    {"conversationId": "c1", "startTimestamp": 100},
                    {"conversationId": "c2", "startTimestamp": 200},
                    {"startTimestamp": 300},
                ],
            },
        )

    async with _make_api(handler, list_entries_limit=25) as api:
        listing = await api.list_open_conversations(_context(conversation_id=None))

    assert seen[0].url.path == "/iamessage/api/v2/conversation/list"
    assert seen[0].url.params["inclClosedConvs"] == "false"
    assert seen[0].url.params["limit"] == "25"
    assert listing.count == 2
    assert [c.conversation_id for c in listing.conversations] == ["c1", "c2"]
    assert listing.conversations[1].start_timestamp == 200


@pytest.mark.asyncio
async def test_list_entries_reads_conversation_entries():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"conversationEntries": [{"identifier": "e2"}, {"identifier": "e1"}]})

    async with _make_api(handler) as api:
        entries = await api.list_entries(_context())

    assert seen[0].url.path == "/iamessage/api/v2/conversation/c1/entries"
    assert seen[0].url.params["direction"] == "FromEnd"
    assert [e["identifier"] for e in entries] == ["e2", "e1"]


@pytest.mark.asyncio
async def test_close_conversation_uses_delete():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    async with _make_api(handler) as api:
        await api.close_conversation(_context())

    assert seen[0].method == "DELETE"
    assert seen[0].url.path == "/iamessage/api/v2/conversation/c1"
    assert seen[0].url.params["esDeveloperName"] == "Web_Deployment"


@pytest.mark.asyncio
async def test_send_message_payload():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202, json={})

    message = OutboundMessage(message_id="m-1", text="Orders", in_reply_to_message_id="choices-1")
    async with _make_api(handler) as api:
        await api.send_message(_context(), message)

    assert seen[0].url.path == "/iamessage/api/v2/conversation/c1/message"
    assert seen[0].headers["Authorization"] == "Bearer token-1"
    body = json.loads(seen[0].content)
    assert body["message"] == {
        "id": "m-1",
        "messageType": "StaticContentMessage",
        "staticContent": {"formatType": "Text", "text": "Orders"},
        "inReplyToMessageId": "choices-1",
    }
    assert body["isNewMessagingSession"] is False
    assert "routingAttributes" not in body


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code, fatal", [(400, False), (429, False), (500, False), (401, True), (404, True)])
async def test_error_status_raises_transport_error(status_code: int, fatal: bool):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json={"message": "nope"})

    async with _make_api(handler) as api:
        with pytest.raises(TransportError) as exc_info:
            await api.send_message(_context(), OutboundMessage(message_id="m", text="hi"))

    assert exc_info.value.status_code == status_code
    assert exc_info.value.message == "nope"
    assert exc_info.value.is_fatal is fatal


@pytest.mark.asyncio
async def test_connection_failure_is_fatal_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with _make_api(handler) as api:
        with pytest.raises(TransportError) as exc_info:
            await api.close_conversation(_context())

    assert exc_info.value.status_code == 0
    assert exc_info.value.is_fatal
