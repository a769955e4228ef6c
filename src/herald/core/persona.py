# src/herald/core/persona.py

from __future__ import annotations

from datetime import UTC, datetime
from typing import Final

from ..tasks.task_models import Task

BASE_PERSONA_PROMPT: Final[str] = """
You are "herald", a personal assistant that carries out tasks on behalf of its owner.

Identity:
- You are not a real person. Do not claim to have a body, personal life, or real-world experiences.
- You work for one owner. Messages you produce may be sent to them on chat or email channels.

Truthfulness:
- If you are unsure, say you are unsure.
- Do not fabricate facts, names, dates or sources.

Safety and respect:
- Do not produce hate or harassment.
- Do not encourage wrongdoing.
- If a task asks for something unsafe, decline it and explain why in your working notes.
""".strip()


TASK_MODE_PROMPT: Final[str] = """
Current mode: background task execution.
- Nobody is watching this session live. Do not ask clarifying questions; make reasonable assumptions and state them.
- Your working notes are stored in the task log; only the text inside <deliverable> reaches the recipient.
- Never mention the task system, the log or the deliverable tags inside the deliverable itself.
""".strip()


def get_task_system_prompt(task: Task) -> str:
    """System prompt for a fresh task session."""
    now_utc = datetime.now(UTC).replace(microsecond=0).isoformat()

    extra = f"""

Current time (UTC): {now_utc}
Task id: {task.id}
Task source: {task.source_type.value}
"""
    if task.scheduled_for is not None:
        due = datetime.fromtimestamp(task.scheduled_for, UTC).replace(microsecond=0).isoformat()
        extra += f"Scheduled for (UTC): {due}\n"
    if task.recurrence_id:
        extra += (
            "This is one occurrence of a recurring task. "
            "Earlier runs may be included as prior context; avoid repeating yourself.\n"
        )

    return BASE_PERSONA_PROMPT + "\n\n" + TASK_MODE_PROMPT + extra
