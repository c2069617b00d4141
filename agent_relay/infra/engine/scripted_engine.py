"""Built-in query engines: YAML-scripted replay and a prompt echo for local runs."""

from __future__ import annotations

import asyncio
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator

import yaml

from agent_relay.infra.engine.base import RawItem
from agent_relay.infra.observability.logger import get_logger

logger = get_logger(__name__)

PROMPT_PLACEHOLDER = "{prompt}"


class ScriptedQueryError(RuntimeError):
    """Failure raised by a script's ``fail_message`` after its steps ran."""


@dataclass(frozen=True)
class ScriptStep:
    type: str
    data: Any = None
    delay_seconds: float | None = None


@dataclass(frozen=True)
class QueryScript:
    steps: list[ScriptStep] = field(default_factory=list)
    fail_message: str | None = None


def _substitute(value: Any, prompt: str) -> Any:
    if isinstance(value, str):
        return value.replace(PROMPT_PLACEHOLDER, prompt)
    if isinstance(value, list):
        return [_substitute(item, prompt) for item in value]
    if isinstance(value, dict):
        return {key: _substitute(item, prompt) for key, item in value.items()}
    return value


def load_script(script_file: Path) -> QueryScript:
    """Load ``steps``/``fail_message`` from YAML; unreadable files yield an echo script."""
    if not script_file.exists():
        logger.warning("engine.script.missing path=%s fallback=echo", script_file)
        return echo_script()
    try:
        raw = yaml.safe_load(script_file.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        logger.warning("engine.script.invalid path=%s error=%s fallback=echo", script_file, exc)
        return echo_script()
    if not isinstance(raw, dict):
        return echo_script()
    steps: list[ScriptStep] = []
    for item in raw.get("steps") or []:
        if not isinstance(item, dict) or not isinstance(item.get("type"), str):
            continue
        delay = item.get("delay_seconds")
        steps.append(
            ScriptStep(
                type=item["type"],
                data=item.get("data"),
                delay_seconds=float(delay) if delay is not None else None,
            )
        )
    fail_message = raw.get("fail_message")
    return QueryScript(
        steps=steps,
        fail_message=str(fail_message) if fail_message else None,
    )


def echo_script() -> QueryScript:
    return QueryScript(
        steps=[
            ScriptStep(type="system", data={"subtype": "init"}),
            ScriptStep(type="assistant", data={"text": PROMPT_PLACEHOLDER}),
            ScriptStep(type="result", data={"subtype": "success", "num_turns": 1}),
        ]
    )


class ScriptedQueryHandle:
    """Replays one script; ``cancel`` stops it before the next step."""

    def __init__(
        self,
        *,
        script: QueryScript,
        prompt: str,
        working_context: dict[str, Any],
        step_delay_seconds: float,
    ) -> None:
        self._script = script
        self._prompt = prompt
        self._working_context = working_context
        self._step_delay_seconds = step_delay_seconds
        self._cancelled = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def __aiter__(self) -> AsyncIterator[RawItem]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[RawItem]:
        for step in self._script.steps:
            delay = self._step_delay_seconds if step.delay_seconds is None else step.delay_seconds
            if delay > 0:
                try:
                    await asyncio.wait_for(self._cancelled.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
            if self._cancelled.is_set():
                return
            data = _substitute(deepcopy(step.data), self._prompt)
            if step.type == "system" and isinstance(data, dict) and data.get("subtype") == "init":
                data.setdefault("working_context", self._working_context)
            yield {"type": step.type, "data": data}
        if self._script.fail_message and not self._cancelled.is_set():
            raise ScriptedQueryError(_substitute(self._script.fail_message, self._prompt))

    async def cancel(self) -> None:
        self._cancelled.set()


class ScriptedQueryEngine:
    """Replay a fixed script per prompt, substituting ``{prompt}`` in string values."""

    def __init__(self, script: QueryScript, *, step_delay_seconds: float = 0.0) -> None:
        self._script = script
        self._step_delay_seconds = max(0.0, step_delay_seconds)

    @classmethod
    def from_file(cls, script_file: Path, *, step_delay_seconds: float = 0.0) -> "ScriptedQueryEngine":
        return cls(load_script(script_file), step_delay_seconds=step_delay_seconds)

    @property
    def script(self) -> QueryScript:
        return self._script

    def start_query(self, *, prompt: str, working_context: dict[str, Any]) -> ScriptedQueryHandle:
        return ScriptedQueryHandle(
            script=self._script,
            prompt=prompt,
            working_context=working_context,
            step_delay_seconds=self._step_delay_seconds,
        )


class EchoQueryEngine(ScriptedQueryEngine):
    """Answer every prompt with init, the prompt text, and a success result."""

    def __init__(self, *, step_delay_seconds: float = 0.0) -> None:
        super().__init__(echo_script(), step_delay_seconds=step_delay_seconds)
