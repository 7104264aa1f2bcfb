import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Mapping, Optional, Sequence, Union

import openai
from openai import AsyncOpenAI

from Rapport.config import Settings
from Rapport.errors import ApiError
from Rapport.schemas.chat import AiContext
from Rapport.services.ai.prompt_composer import compose_prompt
from Rapport.services.ai.prompt_templates import AiMode

logger = logging.getLogger(__name__)


_PROVIDER_CFG: Dict[str, Dict[str, Optional[str]]] = {
    "openai": {"env": "OPENAI_API_KEY", "base_url": None},
    "grok": {"env": "GROK_API_KEY", "base_url": "https://api.x.ai/v1"},
    "gemini": {"env": "GEMINI_API_KEY", "base_url": "https://generativelanguage.googleapis.com/v1beta/openai"},
    "anthropic": {"env": "ANTHROPIC_API_KEY", "base_url": "https://api.anthropic.com/v1"},
}

DEFAULT_MODEL = {
    "openai": "gpt-5-mini",
    "grok": "grok-4-fast",
    "gemini": "gemini-2.5-flash-lite",
    "anthropic": "claude-sonnet-4-5",
}

# A turn as stored/replayed: {"role": "user"|"assistant", "content": str | [block, ...]}
ChatTurnDict = Mapping[str, Any]


@dataclass(frozen=True)
class ChatCompletion:
    content: str
    model: str
    input_tokens: int
    output_tokens: int
    stop_reason: Optional[str]


# Create an async OpenAI-compatible client for the configured model provider
def create_async_openai_compatible_client(provider: Optional[str], *, api_key: Optional[str] = None) -> AsyncOpenAI:
    provider_l = (provider or "anthropic").strip().lower()
    cfg = _PROVIDER_CFG.get(provider_l)
    if cfg is None:
        raise ValueError(f"Unsupported provider: {provider_l}")

    env_var = cfg["env"]
    api_key = api_key or os.getenv(env_var)
    if not api_key:
        raise ValueError(f"Missing API key for provider '{provider_l}'. Set {env_var}.")

    kwargs = {"api_key": api_key}
    if cfg["base_url"]:
        kwargs["base_url"] = cfg["base_url"]
    return AsyncOpenAI(**kwargs)


# Convert stored content (string or text/image blocks) into chat-completions content parts
def to_provider_content(role: str, content: Union[str, Sequence[Mapping[str, Any]]]) -> Union[str, list[dict]]:
    if isinstance(content, str):
        return content

    if role == "assistant":
        # assistant turns only carry text parts
        return "".join(block.get("text", "") for block in content if block.get("type") == "text")

    parts: list[dict] = []
    for block in content:
        if block.get("type") == "text":
            parts.append({"type": "text", "text": block["text"]})
        elif block.get("type") == "image":
            source = block["source"]
            parts.append({
                "type": "image_url",
                "image_url": {"url": f"data:{source['media_type']};base64,{source['data']}"},
            })
    return parts


def to_provider_messages(system_prompt: str, turns: Sequence[ChatTurnDict]) -> list[dict]:
    messages: list[dict] = [{"role": "system", "content": system_prompt}]
    for turn in turns:
        role = "assistant" if turn["role"] == "assistant" else "user"
        messages.append({"role": role, "content": to_provider_content(role, turn["content"])})
    return messages


def _provider_message(exc: "openai.APIStatusError") -> str:
    body = getattr(exc, "body", None)
    if isinstance(body, dict):
        err = body.get("error", body)
        if isinstance(err, dict) and isinstance(err.get("message"), str) and err["message"]:
            return err["message"]
    return getattr(exc, "message", None) or "AI service error"


# Maps provider SDK failures onto client-facing API errors (never leaks credentials issues)
def map_provider_error(exc: BaseException) -> ApiError:
    if isinstance(exc, ApiError):
        return exc

    if isinstance(exc, openai.APIStatusError):
        status = exc.status_code
        if status == 401:
            return ApiError(500, "ai_auth_error", "AI service authentication failed")
        if status == 429:
            return ApiError(429, "ai_rate_limit", "AI service rate limit exceeded. Please try again later.")
        if status == 400:
            return ApiError(400, "ai_invalid_request", _provider_message(exc))
        if status == 413:
            return ApiError(413, "ai_payload_too_large", "Request payload too large for AI service")
        return ApiError(502 if status >= 500 else status, "ai_service_error", _provider_message(exc))

    if isinstance(exc, openai.APIConnectionError):
        return ApiError(502, "ai_service_error", "AI service is unreachable. Please try again later.")

    return ApiError(500, "ai_unknown_error", "An unexpected error occurred with the AI service")


# Extract streamed text fragments from an OpenAI-compatible chunk
def _extract_text_pieces(chunk: Any) -> list[str]:
    try:
        choice = chunk.choices[0]
    except (AttributeError, IndexError, TypeError):
        return []

    pieces: list[str] = []
    delta = getattr(choice, "delta", None)
    if delta is not None:
        content = getattr(delta, "content", None)
        if isinstance(content, str) and content:
            pieces.append(content)

    # Some providers surface streaming text on choice.text
    text_piece = getattr(choice, "text", None)
    if isinstance(text_piece, str) and text_piece:
        pieces.append(text_piece)
    return pieces


class AIChatClient:
    """Model-provider client owned by the app lifespan and injected into handlers."""

    def __init__(
        self,
        client: AsyncOpenAI,
        *,
        model: str,
        fallback_system_prompt: str,
        default_max_tokens: int = 4096,
        default_temperature: float = 1.0,
    ):
        self._client = client
        self.model = model
        self.fallback_system_prompt = fallback_system_prompt
        self.default_max_tokens = default_max_tokens
        self.default_temperature = default_temperature

    def build_system_prompt(
        self,
        mode: Optional[Union[str, AiMode]] = None,
        context: Optional[AiContext] = None,
        locale: Optional[str] = None,
    ) -> str:
        return compose_prompt(mode=mode, context=context, locale=locale, fallback_prompt=self.fallback_system_prompt)

    def _request_kwargs(
        self,
        turns: Sequence[ChatTurnDict],
        *,
        max_tokens: Optional[int],
        temperature: Optional[float],
        mode: Optional[Union[str, AiMode]],
        context: Optional[AiContext],
        locale: Optional[str],
    ) -> dict[str, Any]:
        system_prompt = self.build_system_prompt(mode=mode, context=context, locale=locale)
        return {
            "model": self.model,
            "messages": to_provider_messages(system_prompt, turns),
            "max_tokens": max_tokens or self.default_max_tokens,
            "temperature": self.default_temperature if temperature is None else temperature,
        }

    async def chat(
        self,
        turns: Sequence[ChatTurnDict],
        *,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        mode: Optional[Union[str, AiMode]] = None,
        context: Optional[AiContext] = None,
        locale: Optional[str] = None,
    ) -> ChatCompletion:
        kwargs = self._request_kwargs(
            turns, max_tokens=max_tokens, temperature=temperature, mode=mode, context=context, locale=locale
        )
        t0 = time.perf_counter()
        try:
            response = await self._client.chat.completions.create(**kwargs)
        except Exception as exc:
            logger.warning("chat.completion.error: %s", type(exc).__name__)
            raise map_provider_error(exc) from exc

        choice = response.choices[0] if response.choices else None
        content = (choice.message.content if choice is not None and choice.message else None) or ""
        usage = getattr(response, "usage", None)
        completion = ChatCompletion(
            content=content,
            model=getattr(response, "model", None) or self.model,
            input_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
            output_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
            stop_reason=getattr(choice, "finish_reason", None) if choice is not None else None,
        )
        logger.info(
            "chat.completion.done: model=%s in=%d out=%d ms=%d",
            completion.model,
            completion.input_tokens,
            completion.output_tokens,
            int((time.perf_counter() - t0) * 1000),
        )
        return completion

    async def chat_stream(
        self,
        turns: Sequence[ChatTurnDict],
        *,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        mode: Optional[Union[str, AiMode]] = None,
        context: Optional[AiContext] = None,
        locale: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[str]:
        """Yield text deltas; stops reading upstream once `cancel_event` is set."""
        kwargs = self._request_kwargs(
            turns, max_tokens=max_tokens, temperature=temperature, mode=mode, context=context, locale=locale
        )
        try:
            stream = await self._client.chat.completions.create(stream=True, **kwargs)
        except Exception as exc:
            raise map_provider_error(exc) from exc

        try:
            async for chunk in stream:
                if cancel_event is not None and cancel_event.is_set():
                    break
                for piece in _extract_text_pieces(chunk):
                    yield piece
        except Exception as exc:
            raise map_provider_error(exc) from exc
        finally:
            try:
                await stream.close()
            except Exception:
                logger.debug("chat.stream.close.error", exc_info=True)

    async def close(self) -> None:
        await self._client.close()


def build_ai_client(settings: Settings) -> AIChatClient:
    provider = settings.ai_provider
    client = create_async_openai_compatible_client(provider)
    return AIChatClient(
        client,
        model=settings.ai_model or DEFAULT_MODEL.get(provider) or DEFAULT_MODEL["anthropic"],
        fallback_system_prompt=settings.ai_system_prompt,
        default_max_tokens=settings.ai_default_max_tokens,
        default_temperature=settings.ai_default_temperature,
    )
