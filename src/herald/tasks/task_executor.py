# src/herald/tasks/task_executor.py

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Final

from ..core.ports import Brain, TranscriptTurn
from ..llm.client import friendly_llm_error_message
from .task_log import TaskLogStorage, utc_now_iso
from .task_models import ItemStatus, Task, TaskStatus, TaskUpdate
from .task_store import TaskStore, TaskStoreError

logger = logging.getLogger(__name__)

DECLINE_SENTINEL: Final[str] = "NONE"

_DELIVERABLE_RE = re.compile(r"<deliverable>(.*?)</deliverable>", re.DOTALL | re.IGNORECASE)

# Formatting rules appended once per distinct target channel.
CHANNEL_FORMAT_RULES: Final[dict[str, str]] = {
    "whatsapp": "plain text only, no markdown headings or tables, keep it under 1000 characters",
    "sms": "plain text only, keep it under 300 characters",
    "matrix": "light markdown is fine (bold, lists, links), keep it under 4000 characters",
    "console": "plain text, short paragraphs",
    "email": "rich markdown allowed; start with a one-line summary, then details",
}
DEFAULT_FORMAT_RULE: Final[str] = "plain text, concise"


@dataclass(slots=True)
class ExecutionResult:
    success: bool
    work: str = ""
    deliverable: str | None = None
    needs_review: bool = False
    error: str | None = None


def parse_deliverable(response: str) -> tuple[str, str | None]:
    """
    Split a brain response into (work, deliverable).

    - deliverable: stripped contents of the first <deliverable>...</deliverable> block, or None
    - work: everything outside that block
    """
    text = response or ""
    m = _DELIVERABLE_RE.search(text)
    if m is None:
        return text.strip(), None

    deliverable = m.group(1).strip()
    work = (text[: m.start()] + text[m.end():]).strip()
    return work, deliverable


def validate_deliverable(task: Task, deliverable: str | None) -> tuple[bool, str | None]:
    """
    Gate between free-form brain output and delivery.

    Returns (ok, reason). When no pending delivery action needs brain-written
    content, any deliverable (including none) is accepted.
    """
    if not task.needs_deliverable():
        return True, None
    if deliverable is None:
        return False, "response contained no <deliverable> block"
    text = deliverable.strip()
    if not text:
        return False, "deliverable was empty"
    if text.upper() == DECLINE_SENTINEL:
        return False, "brain declined to produce a deliverable"
    return True, None


def build_task_prompt(task: Task) -> str:
    """Assemble the user-side prompt for one task execution."""
    parts: list[str] = [f'Task: "{task.title}"']

    if task.instructions:
        parts.append(task.instructions)

    if task.work:
        lines = ["## Work", "", "Complete the following, in order:"]
        for w in task.work:
            mark = "x" if w.status == ItemStatus.COMPLETED else " "
            lines.append(f"- [{mark}] {w.description}")
        parts.append("\n".join(lines))

    needing = [a for a in task.pending_delivery() if a.content is None]
    if needing:
        channels: list[str] = []
        for a in needing:
            if a.channel not in channels:
                channels.append(a.channel)

        lines = [
            "## Deliverable",
            "",
            "When the work is done, write the message for the recipient inside a single block:",
            "",
            "<deliverable>",
            "...recipient-facing text only...",
            "</deliverable>",
            "",
            "Everything outside the block is treated as working notes and is never sent.",
            "The block must contain ONLY the text the recipient should read.",
            "",
            "Formatting rules:",
        ]
        for ch in channels:
            rule = CHANNEL_FORMAT_RULES.get(ch.lower(), DEFAULT_FORMAT_RULE)
            lines.append(f"- {ch}: {rule}")
        lines += [
            "",
            f"If you cannot safely produce the message, output <deliverable>{DECLINE_SENTINEL}</deliverable> "
            "and explain the reason outside the block.",
        ]
        parts.append("\n".join(lines))

    return "\n\n".join(parts)


def format_prior_turns(turns: list[TranscriptTurn]) -> str:
    if not turns:
        return ""
    lines = ["Prior context from this recurring task:", ""]
    for t in turns:
        who = "User" if t.role == "user" else "Assistant"
        lines.append(f"{who}: {t.content}")
        lines.append("")
    lines += ["---", "", "Current execution:", "", ""]
    return "\n".join(lines)


class TaskExecutor:
    """
    Runs the reasoning step of one task.

    Flow:
    - pending -> running (+ started_at)
    - resume the stored backend session, or start a fresh one with full context
    - parse and validate the <deliverable> block
    - append user/assistant turns to the execution log

    On success the task is left in "running"; the processor finalizes it.
    Any exception marks the task "failed" and is reported in the result.
    """

    def __init__(
        self,
        task_store: TaskStore,
        log_storage: TaskLogStorage,
        brain: Brain,
        *,
        system_prompt_factory: Callable[[Task], str],
        prior_turns_limit: int = 10,
    ) -> None:
        self._store = task_store
        self._logs = log_storage
        self._brain = brain
        self._system_prompt_factory = system_prompt_factory
        self._prior_turns_limit = max(0, int(prior_turns_limit))

    async def run(self, task: Task) -> ExecutionResult:
        logger.info("Running task %s (%s)", task.id, task.title)

        try:
            task = self._store.update(task.id, TaskUpdate(status=TaskStatus.RUNNING, started_at=time.time()))
            self._logs.ensure_log(task.id, task.session_id, task.title)

            prior_turns = self._load_prior_turns(task)
            prompt = build_task_prompt(task)

            response, token = await self._query_with_resume(task, prompt, prior_turns)

            if token:
                self._store.save_backend_session(task.session_id, token)

            turn_number = self._logs.get_turn_count(task.id) + 1
            self._logs.append_turn(
                task.id,
                TranscriptTurn(role="user", content=prompt, timestamp=utc_now_iso(), turn_number=turn_number),
            )
            self._logs.append_turn(
                task.id,
                TranscriptTurn(role="assistant", content=response, timestamp=utc_now_iso(), turn_number=turn_number),
            )

            work, deliverable = parse_deliverable(response)
            ok, reason = validate_deliverable(task, deliverable)
            if not ok:
                logger.warning("Task %s needs review: %s", task.id, reason)
                self._logs.append_event(task.id, "needs_review", reason=reason)
                self._store.update(
                    task.id,
                    TaskUpdate(status=TaskStatus.NEEDS_REVIEW, completed_at=time.time()),
                )
                return ExecutionResult(
                    success=False,
                    work=work,
                    deliverable=deliverable,
                    needs_review=True,
                    error=reason,
                )

            logger.info("Task %s reasoning step done (deliverable=%s)", task.id, deliverable is not None)
            return ExecutionResult(success=True, work=work, deliverable=deliverable)

        except Exception as e:
            message = friendly_llm_error_message(e) if str(e).strip() else e.__class__.__name__
            logger.exception("Task %s failed", task.id)
            self._mark_failed(task, message)
            return ExecutionResult(success=False, error=message)

    def _mark_failed(self, task: Task, message: str) -> None:
        try:
            self._logs.ensure_log(task.id, task.session_id, task.title)
            self._logs.append_event(task.id, "error", error=message)
        except OSError:
            logger.exception("Task %s: could not write error event", task.id)

        try:
            self._store.update(task.id, TaskUpdate(status=TaskStatus.FAILED, completed_at=time.time()))
        except TaskStoreError:
            logger.exception("Task %s: could not mark failed", task.id)

    def _load_prior_turns(self, task: Task) -> list[TranscriptTurn]:
        """
        Prior context for recurring tasks.

        Uses this task's own log first; if it has no turns yet (first run of a
        new occurrence), falls back to the most recent earlier sibling's log.
        """
        if not task.recurrence_id or self._prior_turns_limit == 0:
            return []

        turns = self._logs.get_recent_turns(task.id, self._prior_turns_limit)
        if turns:
            logger.debug("Task %s: loaded %d prior turns from own log", task.id, len(turns))
            return turns

        siblings = [
            s for s in self._store.find_by_recurrence(task.recurrence_id)
            if s.id != task.id and s.created_at <= task.created_at
        ]
        for sibling in reversed(siblings):
            turns = self._logs.get_recent_turns(sibling.id, self._prior_turns_limit)
            if turns:
                logger.debug(
                    "Task %s: loaded %d prior turns from sibling %s",
                    task.id,
                    len(turns),
                    sibling.id,
                )
                return turns
        return []

    async def _query_with_resume(
        self,
        task: Task,
        prompt: str,
        prior_turns: list[TranscriptTurn],
    ) -> tuple[str, str | None]:
        token = self._store.get_backend_session(task.session_id)
        if token:
            try:
                logger.debug("Task %s: resuming backend session", task.id)
                return await self._drain(prompt, resume=token)
            except Exception as e:
                logger.warning(
                    "Task %s: resume failed (%s), starting a fresh session",
                    task.id,
                    e.__class__.__name__,
                )
                self._store.clear_backend_session(task.session_id)

        system_prompt = self._system_prompt_factory(task)
        full_prompt = format_prior_turns(prior_turns) + prompt
        return await self._drain(full_prompt, system_prompt=system_prompt)

    async def _drain(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        resume: str | None = None,
    ) -> tuple[str, str | None]:
        parts: list[str] = []
        token: str | None = None
        async for ev in self._brain.query(prompt, system_prompt=system_prompt, resume=resume):
            if ev.kind == "text":
                parts.append(ev.text)
            elif ev.kind == "session" and ev.session_token:
                token = ev.session_token
        return "".join(parts), token
