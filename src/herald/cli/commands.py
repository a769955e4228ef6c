# src/herald/cli/commands.py

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from datetime import datetime
from typing import cast

from ..core.state import AppState
from ..tasks.task_api import request_task, schedule_message
from ..tasks.task_models import ListTasksFilter, Task, TaskStatus, TaskType, TaskUpdate
from ..tasks.task_store import TaskStoreError

CommandEmitter = Callable[[str], None]
CommandHandler4 = Callable[[AppState, list[str], str | None, str | None], str]
CommandHandler5 = Callable[
    [AppState, list[str], str | None, str | None, CommandEmitter | None], str
]
CommandHandler = CommandHandler4 | CommandHandler5

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Simple slash-command registry used by connectors (/help, /tasks, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    def handle(
        self,
        state: AppState,
        line: str,
        user_id: str | None = None,
        room_id: str | None = None,
        emit: CommandEmitter | None = None,
    ) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            nparams = len(inspect.signature(handler).parameters)
        except (TypeError, ValueError):
            nparams = 5

        if nparams >= 5:
            h5 = cast(CommandHandler5, handler)
            return h5(state, args, user_id, room_id, emit)

        h4 = cast(CommandHandler4, handler)
        return h4(state, args, user_id, room_id)

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


def _fmt_ts(ts: float | None) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts).astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _resolve_task(state: AppState, ref: str) -> Task | None:
    """Exact id, or a unique suffix of one (ULIDs are long to type)."""
    task = state.task_store.find_by_id(ref)
    if task is not None:
        return task
    matches = [t for t in state.task_store.list(ListTasksFilter(include_deleted=True)) if t.id.endswith(ref)]
    return matches[0] if len(matches) == 1 else None


def _conversation_channel(state: AppState, room_id: str | None) -> str | None:
    """Map the caller's room (or channel id) to the channel id that owns it."""
    if not room_id:
        return None
    if state.channels.get_channel_config(room_id) is not None:
        return room_id
    for info in state.channels.channel_infos():
        if info.owner_identity == room_id:
            return info.id
    return None


def _short(task: Task) -> str:
    when = f" due {_fmt_ts(task.scheduled_for)}" if task.scheduled_for is not None else ""
    return f"{task.id}  [{task.status.value}] {task.type.value}{when}  {task.title}"


def cmd_help(
    state: AppState,
    args: list[str],
    user_id: str | None,
    room_id: str | None,
    emit: CommandEmitter | None = None,
) -> str:
    return registry.build_help()


def cmd_status(
    state: AppState,
    args: list[str],
    user_id: str | None,
    room_id: str | None,
) -> str:
    models = ", ".join(state.settings.llm_models)
    brain = f"online ({models})" if state.brain_online else "offline demo"
    channels = ", ".join(f"{c.id}:{c.plugin}" for c in state.channels.channel_infos()) or "none"

    counts = []
    for st in (TaskStatus.PENDING, TaskStatus.RUNNING, TaskStatus.NEEDS_REVIEW, TaskStatus.FAILED):
        n = len(state.task_store.list(ListTasksFilter(status=st)))
        counts.append(f"{st.value}={n}")

    return (
        "Status:\n"
        f"  Brain: {brain}\n"
        f"  Channels: {channels}\n"
        f"  Scheduler: {'running' if state.scheduler.running else 'stopped'}"
        f" (every {state.settings.scheduler_interval_seconds:.0f}s)\n"
        f"  In-flight executions: {state.processor.inflight_count}\n"
        f"  Tasks: {', '.join(counts)} (total {state.task_store.count_tasks()})"
    )


def cmd_tasks(
    state: AppState,
    args: list[str],
    user_id: str | None,
    room_id: str | None,
) -> str:
    """
    /tasks              -> latest 20 (deleted hidden)
    /tasks <status>     -> filter by status
    /tasks all          -> include deleted
    """
    flt = ListTasksFilter(limit=20)
    if args:
        arg = args[0].lower()
        if arg == "all":
            flt.include_deleted = True
        else:
            try:
                flt.status = TaskStatus(arg)
            except ValueError:
                return f"Unknown status: {arg}. Use one of: {', '.join(s.value for s in TaskStatus)}."
            if flt.status == TaskStatus.DELETED:
                flt.include_deleted = True

    tasks = state.task_store.list(flt)
    if not tasks:
        return "No tasks."
    return "\n".join(["Tasks (newest first):", *(f"  {_short(t)}" for t in tasks)])


def cmd_task(
    state: AppState,
    args: list[str],
    user_id: str | None,
    room_id: str | None,
) -> str:
    if not args:
        return "Usage: /task <id>"
    task = _resolve_task(state, args[0])
    if task is None:
        return f"Task not found: {args[0]}"

    lines = [
        f"Task {task.id}",
        f"  Title: {task.title}",
        f"  Status: {task.status.value}  Type: {task.type.value}  Source: {task.source_type.value}",
        f"  Created: {_fmt_ts(task.created_at)} by {task.created_by.value}",
        f"  Scheduled: {_fmt_ts(task.scheduled_for)}  Started: {_fmt_ts(task.started_at)}"
        f"  Finished: {_fmt_ts(task.completed_at)}",
        f"  Session: {task.session_id}",
    ]
    if task.recurrence_id:
        lines.append(f"  Recurrence: {task.recurrence_id} @ {task.occurrence_date}")
    if task.instructions:
        lines.append(f"  Instructions: {task.instructions}")
    for w in task.work:
        lines.append(f"  work [{w.status.value}] {w.description}")
    for a in task.delivery:
        kind = "pre-composed" if a.content is not None else "brain"
        to = f" -> {a.recipient}" if a.recipient else ""
        lines.append(f"  delivery [{a.status.value}] {a.channel}{to} ({kind})")
    links = state.task_store.get_conversations_for_task(task.id)
    if links:
        lines.append("  Conversations: " + ", ".join(cid for cid, _ in links))
    return "\n".join(lines)


def cmd_new(
    state: AppState,
    args: list[str],
    user_id: str | None,
    room_id: str | None,
) -> str:
    """/new <channel> <instructions...> -> immediate task, brain writes the message."""
    if len(args) < 2:
        return "Usage: /new <channel> <instructions...>"

    channel = args[0]
    conv_channel = _conversation_channel(state, room_id)
    conversation_id = None
    if conv_channel:
        conversation_id = state.conversations.get_or_create(conv_channel, title=conv_channel).id

    try:
        task = request_task(
            state,
            channel=channel,
            instructions=" ".join(args[1:]),
            conversation_id=conversation_id,
        )
    except ValueError as e:
        return f"Cannot create task: {e}"
    return f"Task created: {task.id} (running now)"


def cmd_remind(
    state: AppState,
    args: list[str],
    user_id: str | None,
    room_id: str | None,
) -> str:
    """/remind <minutes> <channel> <text...> -> scheduled pre-composed message."""
    if len(args) < 3:
        return "Usage: /remind <minutes> <channel> <text...>"
    try:
        minutes = float(args[0])
    except ValueError:
        return f"Not a number of minutes: {args[0]}"

    task = schedule_message(state, channel=args[1], text=" ".join(args[2:]), run_after_minutes=minutes)
    return f"Scheduled {task.id} for {_fmt_ts(task.scheduled_for)}"


def cmd_link(
    state: AppState,
    args: list[str],
    user_id: str | None,
    room_id: str | None,
) -> str:
    """/link <task> [conversation_id] -> link a task to a conversation (default: this one)."""
    if not args:
        return "Usage: /link <task> [conversation_id]"
    task = _resolve_task(state, args[0])
    if task is None:
        return f"Task not found: {args[0]}"

    if len(args) > 1:
        conv = state.conversations.get(args[1])
        if conv is None:
            return f"Conversation not found: {args[1]}"
    else:
        conv_channel = _conversation_channel(state, room_id)
        if not conv_channel:
            return "No conversation in this context. Use /link <task> <conversation_id>."
        conv = state.conversations.get_or_create(conv_channel, title=conv_channel)

    state.task_store.link_task_to_conversation(task.id, conv.id)
    return f"Linked {task.id} to conversation {conv.id}"


def _set_status(state: AppState, ref: str, status: TaskStatus, verb: str) -> str:
    task = _resolve_task(state, ref)
    if task is None:
        return f"Task not found: {ref}"
    try:
        if status == TaskStatus.DELETED:
            state.task_store.delete(task.id)
        else:
            state.task_store.update(task.id, TaskUpdate(status=status))
    except TaskStoreError as e:
        return f"Cannot {verb} {task.id}: {e}"
    logger.info("Task %s %s via command", task.id, verb)
    return f"Task {task.id}: {task.status.value} -> {status.value}"


def cmd_delete(state: AppState, args: list[str], user_id: str | None, room_id: str | None) -> str:
    if not args:
        return "Usage: /delete <task>"
    return _set_status(state, args[0], TaskStatus.DELETED, "delete")


def cmd_pause(state: AppState, args: list[str], user_id: str | None, room_id: str | None) -> str:
    if not args:
        return "Usage: /pause <task>"
    return _set_status(state, args[0], TaskStatus.PAUSED, "pause")


def cmd_resume(state: AppState, args: list[str], user_id: str | None, room_id: str | None) -> str:
    """/resume <task> -> paused back to pending. Immediate tasks start running again."""
    if not args:
        return "Usage: /resume <task>"
    before = _resolve_task(state, args[0])
    reply = _set_status(state, args[0], TaskStatus.PENDING, "resume")

    # the scheduler only picks up scheduled tasks
    if before is not None and before.type == TaskType.IMMEDIATE and before.status == TaskStatus.PAUSED:
        resumed = state.task_store.find_by_id(before.id)
        if resumed is not None and resumed.status == TaskStatus.PENDING:
            state.processor.on_task_created(resumed)
    return reply


def cmd_log(
    state: AppState,
    args: list[str],
    user_id: str | None,
    room_id: str | None,
) -> str:
    """/log <task> [n] -> last n execution log records (default 10)."""
    if not args:
        return "Usage: /log <task> [n]"
    task = _resolve_task(state, args[0])
    if task is None:
        return f"Task not found: {args[0]}"

    limit = 10
    if len(args) > 1:
        try:
            limit = max(1, int(args[1]))
        except ValueError:
            return f"Not a number: {args[1]}"

    records = [r for r in state.task_logs.read_full_log(task.id) if r.get("type") != "meta"]
    if not records:
        return f"No log records for {task.id}."

    lines = [f"Log of {task.id} (last {min(limit, len(records))} of {len(records)}):"]
    for rec in records[-limit:]:
        if rec.get("type") == "turn":
            content = str(rec.get("content") or "")
            if len(content) > 400:
                content = content[:400] + "..."
            lines.append(f"  #{rec.get('turn_number')} {rec.get('role')}: {content}")
        else:
            details = {k: v for k, v in rec.items() if k not in ("type", "event", "timestamp")}
            lines.append(f"  [{rec.get('event')}] {details}")
    return "\n".join(lines)


def cmd_run(
    state: AppState,
    args: list[str],
    user_id: str | None,
    room_id: str | None,
) -> str:
    """/run <task> -> execute a pending task now, regardless of its schedule."""
    if not args:
        return "Usage: /run <task>"
    task = _resolve_task(state, args[0])
    if task is None:
        return f"Task not found: {args[0]}"
    if task.status != TaskStatus.PENDING:
        return f"Only pending tasks can be run (status is {task.status.value})."

    state.processor.start_detached(task)
    return f"Running {task.id}..."


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("status", cmd_status, help_text="Show brain, channels, scheduler and task counts.")
registry.register("tasks", cmd_tasks, help_text="List tasks: /tasks [status|all].")
registry.register("task", cmd_task, help_text="Show one task: /task <id>.")
registry.register("new", cmd_new, help_text="Run a brain task now: /new <channel> <instructions...>.")
registry.register("remind", cmd_remind, help_text="Schedule a message: /remind <minutes> <channel> <text...>.")
registry.register("link", cmd_link, help_text="Link a task to a conversation: /link <task> [conversation_id].")
registry.register("delete", cmd_delete, help_text="Soft-delete a task: /delete <task>.", aliases=["rm"])
registry.register("pause", cmd_pause, help_text="Pause a pending task: /pause <task>.")
registry.register("resume", cmd_resume, help_text="Resume a paused task: /resume <task>.")
registry.register("log", cmd_log, help_text="Show execution log: /log <task> [n].")
registry.register("run", cmd_run, help_text="Execute a pending task now: /run <task>.")
