# src/herald/llm/offline.py

from __future__ import annotations

from collections.abc import AsyncIterator

from ulid import ULID

from ..core.ports import BrainEvent, SessionResumeError


class OfflineBrain:
    """
    Offline deterministic brain used for demos when no external API is configured.

    Behavior:
    - Prompts asking for a <deliverable> -> declines with <deliverable>NONE</deliverable>,
      so such tasks end up in needs_review instead of sending placeholder text
    - Other prompts -> a short offline notice
    - Sessions live in memory only; resuming an unknown token raises SessionResumeError
    """

    def __init__(self) -> None:
        self._sessions: set[str] = set()

    async def query(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        resume: str | None = None,
    ) -> AsyncIterator[BrainEvent]:
        if resume is not None:
            if resume not in self._sessions:
                raise SessionResumeError(f"Unknown offline session: {resume}")
            token = resume
        else:
            token = f"offline-{ULID()}"
            self._sessions.add(token)

        yield BrainEvent(
            kind="text",
            text=(
                "Offline demo mode: no external brain is configured.\n"
                "Set HERALD_OPENROUTER_API_KEY (and HERALD_LLM_MODELS) to enable real task execution.\n"
            ),
        )

        if "<deliverable>" in (prompt or ""):
            yield BrainEvent(
                kind="text",
                text="\nCannot write a message for the recipient without a brain.\n<deliverable>NONE</deliverable>",
            )

        yield BrainEvent(kind="session", session_token=token)
