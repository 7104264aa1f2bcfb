import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator, Callable, Optional, Protocol, Sequence

from fastapi.responses import StreamingResponse

from Rapport.errors import ApiError
from Rapport.services.ai_client import AIChatClient, ChatTurnDict

logger = logging.getLogger(__name__)

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}
DISCONNECT_POLL_SECONDS = 0.5
STREAM_INTERRUPTED = "Stream interrupted"

# Receives the assistant text actually delivered to the client (full or partial, never empty)
PersistCallback = Callable[[str], None]


class DisconnectAware(Protocol):
    async def is_disconnected(self) -> bool: ...


def format_sse(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


class ChatStreamRelay:
    """Relays model text deltas to the browser as Server-Sent Events.

    A producer task reads the provider stream into a queue; the response
    generator drains it. Client disconnect (generator closed, or observed by
    the disconnect watcher) sets the shared cancel event and cancels the
    producer, which aborts the upstream request. Text already delivered is
    handed to `on_finish` exactly once.
    """

    def __init__(self, ai_client: AIChatClient, *, disconnect_poll_seconds: float = DISCONNECT_POLL_SECONDS):
        self.ai_client = ai_client
        self.disconnect_poll_seconds = disconnect_poll_seconds

    def stream_response(
        self,
        request: Optional[DisconnectAware],
        turns: Sequence[ChatTurnDict],
        *,
        on_finish: Optional[PersistCallback] = None,
        label: str = "chat",
        **chat_kwargs: Any,
    ) -> StreamingResponse:
        return StreamingResponse(
            self.iter_events(request, turns, on_finish=on_finish, label=label, **chat_kwargs),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    async def iter_events(
        self,
        request: Optional[DisconnectAware],
        turns: Sequence[ChatTurnDict],
        *,
        on_finish: Optional[PersistCallback] = None,
        label: str = "chat",
        **chat_kwargs: Any,
    ) -> AsyncIterator[str]:
        queue: asyncio.Queue[Optional[dict]] = asyncio.Queue()
        cancel_event = asyncio.Event()
        delivered: list[str] = []
        completed = False
        persisted = False
        t0 = time.perf_counter()

        def _persist() -> None:
            nonlocal persisted
            if persisted or on_finish is None:
                return
            persisted = True
            text = "".join(delivered)
            if not text:
                return
            try:
                on_finish(text)
            except Exception:
                logger.exception("conversation.persist.error: stream=%s chars=%d", label, len(text))

        producer = asyncio.create_task(self._produce(turns, queue, cancel_event, chat_kwargs))
        watcher = None
        if request is not None:
            watcher = asyncio.create_task(self._watch_disconnect(request, cancel_event, producer))

        client_stopped = False
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                if "text" in event:
                    delivered.append(event["text"])
                elif event.get("done"):
                    completed = True
                    # persist before the client sees `done`
                    _persist()
                yield format_sse(event)
        except (GeneratorExit, asyncio.CancelledError):
            client_stopped = True
            raise
        finally:
            # the watcher sets cancel_event only when the client went away
            client_stopped = client_stopped or cancel_event.is_set()
            cancel_event.set()
            for task in (producer, watcher):
                if task is not None and not task.done():
                    task.cancel()
            if client_stopped and not completed:
                logger.info("chat.stream.cancelled: stream=%s chars=%d", label, sum(len(p) for p in delivered))
            _persist()
            logger.info(
                "stream.done: stream=%s chars=%d completed=%s ms=%d",
                label,
                sum(len(p) for p in delivered),
                completed,
                int((time.perf_counter() - t0) * 1000),
            )

    async def _produce(
        self,
        turns: Sequence[ChatTurnDict],
        queue: "asyncio.Queue[Optional[dict]]",
        cancel_event: asyncio.Event,
        chat_kwargs: dict,
    ) -> None:
        try:
            async for piece in self.ai_client.chat_stream(turns, cancel_event=cancel_event, **chat_kwargs):
                if cancel_event.is_set():
                    break
                queue.put_nowait({"text": piece})
            if not cancel_event.is_set():
                queue.put_nowait({"done": True})
        except ApiError as exc:
            logger.warning("chat.stream.error: code=%s status=%d", exc.code, exc.status_code)
            queue.put_nowait({"error": exc.message})
        except Exception:
            logger.exception("chat.stream.error")
            queue.put_nowait({"error": STREAM_INTERRUPTED})
        finally:
            queue.put_nowait(None)

    async def _watch_disconnect(
        self,
        request: DisconnectAware,
        cancel_event: asyncio.Event,
        producer: "asyncio.Task[None]",
    ) -> None:
        while not cancel_event.is_set():
            if await request.is_disconnected():
                logger.info("chat.stream.client_disconnected")
                cancel_event.set()
                producer.cancel()
                return
            await asyncio.sleep(self.disconnect_poll_seconds)
