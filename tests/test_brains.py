# tests/test_brains.py

from __future__ import annotations

import json
import time
from pathlib import Path

import pytest

from herald.core.ports import SessionResumeError
from herald.llm.client import BrainSessionFiles, friendly_llm_error_message
from herald.llm.offline import OfflineBrain


async def _collect(brain: OfflineBrain, prompt: str, **kw) -> tuple[str, str | None]:
    text: list[str] = []
    token = None
    async for ev in brain.query(prompt, **kw):
        if ev.kind == "text":
            text.append(ev.text)
        elif ev.kind == "session":
            token = ev.session_token
    return "".join(text), token


@pytest.mark.asyncio
async def test_offline_brain_declines_deliverables() -> None:
    brain = OfflineBrain()

    text, token = await _collect(brain, "Write it.\n<deliverable>\n...\n</deliverable>")

    assert "<deliverable>NONE</deliverable>" in text
    assert token is not None and token.startswith("offline-")

    again, same = await _collect(brain, "follow up", resume=token)
    assert same == token
    assert "<deliverable>" not in again


@pytest.mark.asyncio
async def test_offline_brain_rejects_unknown_sessions() -> None:
    with pytest.raises(SessionResumeError):
        await _collect(OfflineBrain(), "x", resume="offline-unknown")


def test_session_files_round_trip(tmp_path: Path) -> None:
    files = BrainSessionFiles(tmp_path)
    token = files.new_token()

    files.save(token, "sys", [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "yo"}])
    system, history = files.load(token)

    assert system == "sys"
    assert [m["role"] for m in history] == ["user", "assistant"]


def test_session_files_reject_unknown_malformed_and_expired(tmp_path: Path) -> None:
    files = BrainSessionFiles(tmp_path, ttl_hours=1)

    with pytest.raises(SessionResumeError):
        files.load("brs-nothing")
    with pytest.raises(SessionResumeError):
        files.load("../etc/passwd")

    (tmp_path / "brs-old.json").write_text(
        json.dumps({"system_prompt": "s", "messages": [], "updated_at": time.time() - 7200}),
        "utf-8",
    )
    with pytest.raises(SessionResumeError):
        files.load("brs-old")


def test_friendly_error_message() -> None:
    msg = friendly_llm_error_message(RuntimeError("LLM API key is not set. Set it."))
    assert "missing API key" in msg
    assert friendly_llm_error_message(RuntimeError("")) == "LLM error."
