# src/herald/llm/client.py

from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import httpx
import openai
from openai import AsyncOpenAI
from ulid import ULID

from ..config import Settings
from ..core.ports import BrainEvent, SessionResumeError

logger = logging.getLogger(__name__)

ChatMessage = dict[str, str]


def _is_auth_error(exc: Exception) -> bool:
    return exc.__class__.__name__ in {
        "AuthenticationError",
        "PermissionDeniedError",
        "UnauthorizedError",
    }


def _is_rate_limit_error(exc: Exception) -> bool:
    if isinstance(exc, openai.RateLimitError):
        return True
    return exc.__class__.__name__ in {"RateLimitError", "TooManyRequestsError"}


def _is_connection_error(exc: Exception) -> bool:
    return exc.__class__.__name__ in {
        "APIConnectionError",
        "APITimeoutError",
        "Timeout",
        "ConnectTimeout",
        "ReadTimeout",
        "WriteTimeout",
    }


def _is_not_found_error(exc: Exception) -> bool:
    # OpenAI-compatible SDK uses NotFoundError for HTTP 404 (unknown model)
    return exc.__class__.__name__ in {"NotFoundError"}


def friendly_llm_error_message(err: Exception) -> str:
    msg = str(err).strip() or "LLM error."
    if "LLM API key is not set" in msg:
        return "Brain is not configured (missing API key). Set HERALD_OPENROUTER_API_KEY in .env (see .env.example)."
    if "LLM model list is empty" in msg:
        return "Brain is not configured (no models). Set HERALD_LLM_MODELS in .env (see .env.example)."
    return msg


class BrainSessionFiles:
    """
    Server-side memory for resumable brain sessions.

    OpenAI-compatible chat APIs are stateless, so a "session token" is the name
    of a JSON file holding the system prompt and message history.
    """

    def __init__(self, sessions_dir: str | Path, *, ttl_hours: float = 24.0 * 7) -> None:
        self._dir = Path(sessions_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._ttl_s = max(0.0, float(ttl_hours)) * 3600.0

    def _path(self, token: str) -> Path:
        safe = "".join(ch for ch in token if ch.isalnum() or ch in "-_")
        if not safe or safe != token:
            raise SessionResumeError(f"Malformed session token: {token!r}")
        return self._dir / f"{safe}.json"

    @staticmethod
    def new_token() -> str:
        return f"brs-{ULID()}"

    def load(self, token: str) -> tuple[str, list[ChatMessage]]:
        path = self._path(token)
        if not path.exists():
            raise SessionResumeError(f"Unknown brain session: {token}")

        try:
            data = json.loads(path.read_text("utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise SessionResumeError(f"Unreadable brain session: {token}") from e

        updated_at = float(data.get("updated_at") or 0.0)
        if self._ttl_s and time.time() - updated_at > self._ttl_s:
            raise SessionResumeError(f"Brain session expired: {token}")

        messages = [
            {"role": str(m.get("role")), "content": str(m.get("content") or "")}
            for m in data.get("messages") or []
            if isinstance(m, dict) and m.get("role") in ("user", "assistant")
        ]
        return str(data.get("system_prompt") or ""), messages

    def save(self, token: str, system_prompt: str, messages: list[ChatMessage]) -> None:
        path = self._path(token)
        tmp = path.with_suffix(".tmp")
        payload = {"system_prompt": system_prompt, "messages": messages, "updated_at": time.time()}
        tmp.write_text(json.dumps(payload, ensure_ascii=False), "utf-8")
        os.replace(tmp, path)


class OpenRouterBrain:
    """
    Brain backed by an OpenAI-compatible API (OpenRouter by default).

    Behavior:
    - Tries models in the order from settings (HERALD_LLM_MODELS).
    - If a model doesn't produce a first content token within the first-token
      timeout, we abort and try the next model.
    - 404 (model not available) -> try next, and skip that model for an hour.
    - Rate limit / network issues -> try next.
    - Auth issues -> fail fast (no retries across models).
    - Once any text has been yielded, errors are raised instead of switching models.
    """

    def __init__(self, settings: Settings) -> None:
        api_key = (settings.openrouter_api_key or "").strip()
        base_url = (settings.openrouter_base_url or "").strip()

        if not api_key:
            raise RuntimeError("LLM API key is not set. Set HERALD_OPENROUTER_API_KEY in your .env.")
        if not base_url:
            raise RuntimeError("LLM base URL is not set. Set HERALD_OPENROUTER_BASE_URL in your .env.")

        self._models = [m.strip() for m in settings.llm_models if m and m.strip()]
        if not self._models:
            raise RuntimeError("LLM model list is empty. Set HERALD_LLM_MODELS in your .env.")

        self._headers = dict(settings.extra_headers or {})
        self._first_token_timeout = float(settings.llm_first_token_timeout_seconds)
        self._timeout = httpx.Timeout(
            connect=settings.llm_connect_timeout_seconds,
            read=settings.llm_read_timeout_seconds,
            write=10.0,
            pool=settings.llm_connect_timeout_seconds,
        )

        # Automatic retries are disabled to allow quick fallback across models.
        self._client = AsyncOpenAI(base_url=base_url, api_key=api_key, timeout=self._timeout, max_retries=0)
        self._sessions = BrainSessionFiles(settings.brain_sessions_dir, ttl_hours=settings.brain_session_ttl_hours)
        self._bad_models: dict[str, float] = {}  # model -> retry_at (monotonic)

    async def query(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        resume: str | None = None,
    ) -> AsyncIterator[BrainEvent]:
        if resume:
            stored_prompt, history = self._sessions.load(resume)
            token = resume
            system = stored_prompt
        else:
            token = self._sessions.new_token()
            system = system_prompt or ""
            history = []

        messages: list[ChatMessage] = [*history, {"role": "user", "content": prompt}]

        parts: list[str] = []
        async for chunk in self._stream_with_fallback(system, messages):
            parts.append(chunk)
            yield BrainEvent(kind="text", text=chunk)

        messages.append({"role": "assistant", "content": "".join(parts)})
        self._sessions.save(token, system, messages)
        yield BrainEvent(kind="session", session_token=token)

    async def _stream_with_fallback(self, system: str, messages: list[ChatMessage]) -> AsyncIterator[str]:
        last_error: Exception | None = None
        now = time.monotonic()

        payload = [{"role": "system", "content": system}, *messages] if system else list(messages)

        for model in self._models:
            retry_at = self._bad_models.get(model)
            if retry_at is not None and retry_at > now:
                continue

            logger.info(
                "LLM: trying model=%s (first_token_timeout=%.1fs)",
                model,
                self._first_token_timeout,
            )
            t0 = time.monotonic()
            deadline = t0 + self._first_token_timeout
            used_any = False
            stream: Any = None

            try:
                stream = await self._client.chat.completions.create(
                    model=model,
                    stream=True,
                    extra_headers=self._headers or None,
                    messages=payload,
                )

                async for chunk in stream:
                    if not used_any and time.monotonic() > deadline:
                        last_error = TimeoutError(f"First token timeout on model: {model}")
                        logger.info("LLM: first token timeout on model=%s -> trying next", model)
                        break

                    content = chunk.choices[0].delta.content if chunk.choices else None
                    if content:
                        if not used_any:
                            logger.info("LLM: first token from model=%s (%.2fs)", model, time.monotonic() - t0)
                        used_any = True
                        yield content

                if used_any:
                    logger.debug("LLM: completed with model=%s", model)
                    return

                if last_error is None:
                    last_error = RuntimeError(f"Model returned no content: {model}")

            except Exception as e:
                if used_any:
                    raise
                last_error = e

                if _is_auth_error(e):
                    raise RuntimeError(
                        "LLM authentication failed. Check your API key (HERALD_OPENROUTER_API_KEY)."
                    ) from e

                if _is_not_found_error(e):
                    self._bad_models[model] = time.monotonic() + 3600.0
                    logger.info("LLM: model not available (404): %s", model)
                elif _is_rate_limit_error(e):
                    logger.info("LLM: rate-limited on model=%s, trying next", model)
                elif _is_connection_error(e):
                    logger.info("LLM: network/timeout error on model=%s, trying next", model)
                else:
                    logger.info("LLM: error on model=%s (%s), trying next", model, e.__class__.__name__)

            finally:
                if stream is not None:
                    await stream.close()

        if last_error is not None:
            if _is_rate_limit_error(last_error):
                raise RuntimeError("LLM is rate-limited. Try again later.") from last_error
            if _is_connection_error(last_error):
                raise RuntimeError("LLM network/timeout error. Try again later or change models.") from last_error
            raise RuntimeError("All LLM models failed.") from last_error

        raise RuntimeError("All LLM models failed.")
