"""Server-sent event stream over httpx streaming responses."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Mapping, Optional

import httpx

from messaging_client.config import MessagingConfig
from messaging_client.core.errors import TransportError
from messaging_client.core.session import SessionContext
from messaging_client.log import get_logger
from messaging_client.messaging.base import EventHandler, EventStream, StreamErrorHandler
from messaging_client.messaging.models import ServerSentEvent

logger = get_logger(__name__)

SSE_PATH = "/eventrouter/v1/sse"


class SseParser:
    """Incremental parser turning event-stream lines into ServerSentEvents.

    ``retry`` holds the last reconnection delay (milliseconds) the server
    asked for, if any.
    """

    def __init__(self) -> None:
        self.retry: Optional[int] = None
        self.reset()

    def reset(self) -> None:
        """Drop any partially read frame; ``retry`` is kept."""
        self._event = ""
        self._data: list[str] = []
        self._id: Optional[str] = None

    def feed(self, line: str) -> Optional[ServerSentEvent]:
        """Consume one line. Returns an event when a blank line ends a frame."""
        line = line.rstrip("\r\n")
        if not line:
            if not self._data:
                # Frames without data lines are not dispatched
                self.reset()
                return None
            event = ServerSentEvent(
                event=self._event or "message",
                data="\n".join(self._data),
                id=self._id,
            )
            self.reset()
            return event

        if line.startswith(":"):
            # Comment / keep-alive
            return None

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        match name:
            case "event":
                self._event = value
            case "data":
                self._data.append(value)
            case "id":
                self._id = value or None
            case "retry" if value.isdigit():
                self.retry = int(value)
            case _:
                pass
        return None


class SseEventStream(EventStream):
    """Subscribes to the messaging event router and dispatches events in order.

    When the connection drops the stream reconnects with exponential backoff,
    resuming from the context's current ``last_event_id``, until ``close()``.
    """

    def __init__(self, config: MessagingConfig, client: Optional[httpx.AsyncClient] = None):
        self._config = config
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            timeout=httpx.Timeout(config.timeout, read=None),
        )
        self._response: Optional[httpx.Response] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._closing = False

    @property
    def is_subscribed(self) -> bool:
        return self._task is not None and not self._task.done()

    def _headers(self, ctx: SessionContext) -> dict[str, str]:
        headers = {
            "Accept": "text/event-stream",
            "X-Org-Id": self._config.org_id,
        }
        headers.update(ctx.auth_headers)
        if ctx.last_event_id:
            headers["Last-Event-Id"] = ctx.last_event_id
        return headers

    async def _connect(self, ctx: SessionContext) -> httpx.Response:
        request = self._client.build_request("GET", SSE_PATH, headers=self._headers(ctx))
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise TransportError(f"Event stream connection failed: {e}", status_code=0) from e

        if response.status_code >= 400:
            content = await response.aread()
            await response.aclose()
            raise TransportError(
                content.decode("utf-8", errors="replace") or response.reason_phrase,
                status_code=response.status_code,
            )
        return response

    async def subscribe(
        self,
        ctx: SessionContext,
        handlers: Mapping[str, EventHandler],
        on_error: Optional[StreamErrorHandler] = None,
    ) -> None:
        if self.is_subscribed:
            logger.warning("sse_resubscribe", conversation_id=ctx.conversation_id)
            await self.close()

        response = await self._connect(ctx)
        self._closing = False
        self._response = response
        self._task = asyncio.create_task(self._pump(ctx, response, dict(handlers), on_error))
        logger.info("sse_subscribed", events=sorted(handlers))

    async def _pump(
        self,
        ctx: SessionContext,
        response: httpx.Response,
        handlers: dict[str, EventHandler],
        on_error: Optional[StreamErrorHandler],
    ) -> None:
        parser = SseParser()
        delay = self._config.stream_retry_initial
        current: Optional[httpx.Response] = response
        while current is not None:
            if await self._dispatch(current, parser, handlers):
                delay = self._config.stream_retry_initial
            if self._closing or not self._config.stream_reconnect:
                break

            current = None
            while current is None and not self._closing:
                wait = parser.retry / 1000 if parser.retry is not None else delay
                logger.info("sse_reconnecting", delay=wait, last_event_id=ctx.last_event_id)
                await asyncio.sleep(wait)
                delay = min(delay * 2, self._config.stream_retry_max)
                if self._closing:
                    break
                try:
                    current = await self._connect(ctx)
                except TransportError as e:
                    if e.status_code == 0:
                        logger.warning("sse_reconnect_failed", error=e.message)
                        continue
                    logger.error("sse_reconnect_rejected", status_code=e.status_code, error=e.message)
                    if on_error is not None:
                        await on_error(e)
                    if e.is_fatal:
                        break
            self._response = current
        logger.info("sse_stream_ended", last_event_id=ctx.last_event_id)

    async def _dispatch(
        self,
        response: httpx.Response,
        parser: SseParser,
        handlers: dict[str, EventHandler],
    ) -> int:
        """Read one connection's frames, running each handler to completion before the next.

        Returns the number of events received.
        """
        received = 0
        parser.reset()
        try:
            async for line in response.aiter_lines():
                event = parser.feed(line)
                if event is None:
                    continue
                received += 1
                handler = handlers.get(event.event)
                if handler is None:
                    logger.debug("sse_event_ignored", event_name=event.event)
                    continue
                try:
                    await handler(event)
                except Exception as e:
                    logger.error("sse_handler_error", event_name=event.event, error=str(e))
                if self._closing:
                    break
        except httpx.HTTPError as e:
            logger.warning("sse_stream_interrupted", error=str(e))
        finally:
            await response.aclose()
        return received

    async def wait_closed(self) -> None:
        """Wait until the stream is closed or gives up reconnecting."""
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

    async def close(self) -> None:
        self._closing = True
        task, self._task = self._task, None
        response, self._response = self._response, None

        if task is not None and task is asyncio.current_task():
            # Closed from inside a handler; the pump stops after it returns.
            return
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if response is not None:
            await response.aclose()

    async def aclose(self) -> None:
        """Close the stream and release the HTTP client."""
        await self.close()
        await self._client.aclose()
