"""Agent registry, runner and run history.

An agent is a named async callable. While running it may call other agents
through its invocation context; the runner enforces each agent's
``allowed_calls`` list, rejects call cycles, and records a flat trace of the
frames that completed (children before their parent).
"""

import asyncio
import inspect
import json
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Awaitable, Callable

import structlog
from pydantic import BaseModel
from pydantic_core import to_jsonable_python

from storyloom.models import AgentRunRecord, AgentTraceEntry

logger = structlog.get_logger(__name__)

DEFAULT_MAX_DEPTH = 3
DEFAULT_MAX_CALLS = 20
HISTORY_FILE = "agent-runs.jsonl"
HISTORY_LIMIT = 100


class AgentError(Exception):
    """Base class for agent dispatch failures."""


class AgentNotFoundError(AgentError, LookupError):
    def __init__(self, name: str):
        super().__init__(f"Agent not found: {name}")
        self.agent_name = name


class AgentPolicyError(AgentError):
    def __init__(self, caller: str, callee: str):
        super().__init__(f"Agent {caller} cannot call {callee}")
        self.caller = caller
        self.callee = callee


class AgentCycleError(AgentError):
    def __init__(self, path: list[str]):
        super().__init__(f"Agent cycle detected: {' -> '.join(path)}")
        self.path = path


class AgentLimitError(AgentError):
    """Call depth or call count exceeded for one top-level invocation."""


@dataclass(frozen=True)
class AgentDefinition:
    name: str
    run: Callable[["AgentInvocationContext", Any], Awaitable[Any] | Any]
    input_schema: type[BaseModel] | None = None
    output_schema: type[BaseModel] | None = None
    allowed_calls: tuple[str, ...] = ()
    description: str = ""


class AgentRegistry(Mapping):
    """Immutable name -> AgentDefinition table."""

    def __init__(self, definitions=()):
        agents: dict[str, AgentDefinition] = {}
        for definition in definitions:
            if definition.name in agents:
                raise ValueError(f"Agent already registered: {definition.name}")
            agents[definition.name] = definition
        self._agents = MappingProxyType(agents)

    def __getitem__(self, name: str) -> AgentDefinition:
        return self._agents[name]

    def __iter__(self):
        return iter(self._agents)

    def __len__(self) -> int:
        return len(self._agents)

    def with_agents(self, *definitions: AgentDefinition) -> "AgentRegistry":
        """A new registry with the given definitions added."""
        return AgentRegistry([*self._agents.values(), *definitions])


@dataclass
class _Invocation:
    """Mutable state of one top-level invocation. Never shared between invocations."""
    root_run_id: str
    trace: list[AgentTraceEntry] = field(default_factory=list)
    call_count: int = 0


@dataclass
class AgentInvocationContext:
    """Handed to AgentDefinition.run."""
    data_dir: Path
    story_id: str
    agent_name: str
    run_id: str
    parent_run_id: str | None
    root_run_id: str
    depth: int
    logger: Any
    _runner: "AgentRunner" = field(repr=False)
    _invocation: _Invocation = field(repr=False)
    # Agent names from the root down to this frame
    _path: tuple[str, ...] = field(default=(), repr=False)

    async def invoke_agent(self, name: str, input: Any = None) -> Any:
        """Run a child agent to completion and return its output."""
        return await self._runner._invoke(
            self.data_dir, self.story_id, name, input,
            self._invocation, parent_run_id=self.run_id, path=self._path,
        )


@dataclass
class AgentRunResult:
    run_id: str
    output: Any
    trace: list[AgentTraceEntry]


def _generate_run_id() -> str:
    return f"ar-{uuid.uuid4().hex[:12]}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class AgentRunner:
    def __init__(self, registry: AgentRegistry, max_depth: int = DEFAULT_MAX_DEPTH,
                 max_calls: int = DEFAULT_MAX_CALLS, record_history: bool = True):
        self.registry = registry
        self.max_depth = max_depth
        self.max_calls = max_calls
        self.record_history = record_history

    async def invoke_agent(self, data_dir: Path, story_id: str, agent_name: str,
                           input: Any = None) -> AgentRunResult:
        """Run a top-level agent invocation.

        Any failure in the call graph propagates unchanged and nothing is
        recorded. On success the trace is appended to the story's run history.
        """
        invocation = _Invocation(root_run_id=_generate_run_id())
        started_at = _now_iso()
        output = await self._invoke(data_dir, story_id, agent_name, input, invocation,
                                    parent_run_id=None, path=())
        top = invocation.trace[-1]
        if self.record_history:
            history = AgentRunHistory(data_dir)
            await history.record(AgentRunRecord(
                id=top.run_id,
                agent_name=agent_name,
                story_id=story_id,
                output=output,
                trace=list(invocation.trace),
                started_at=started_at,
                finished_at=top.finished_at,
            ))
        return AgentRunResult(run_id=top.run_id, output=output, trace=invocation.trace)

    def _check_call(self, name: str, invocation: _Invocation,
                    path: tuple[str, ...]) -> AgentDefinition:
        definition = self.registry.get(name)
        if definition is None:
            raise AgentNotFoundError(name)
        if path:
            caller = self.registry[path[-1]]
            if name not in caller.allowed_calls:
                raise AgentPolicyError(caller.name, name)
        if name in path:
            raise AgentCycleError([*path, name])
        if len(path) > self.max_depth:
            raise AgentLimitError(f"Agent call depth exceeded ({self.max_depth})")
        if invocation.call_count >= self.max_calls:
            raise AgentLimitError(f"Agent call limit exceeded ({self.max_calls})")
        return definition

    async def _invoke(self, data_dir: Path, story_id: str, name: str, input: Any,
                      invocation: _Invocation, parent_run_id: str | None,
                      path: tuple[str, ...]) -> Any:
        definition = self._check_call(name, invocation, path)
        invocation.call_count += 1
        depth = len(path)

        run_id = _generate_run_id()
        log = logger.bind(story_id=story_id, agent_name=name, run_id=run_id,
                          root_run_id=invocation.root_run_id)
        started_at = _now_iso()
        started = time.monotonic()
        log.info("Agent run started", parent_run_id=parent_run_id, depth=depth)
        try:
            parsed = (definition.input_schema.model_validate(input)
                      if definition.input_schema else input)
            ctx = AgentInvocationContext(
                data_dir=Path(data_dir), story_id=story_id, agent_name=name,
                run_id=run_id, parent_run_id=parent_run_id,
                root_run_id=invocation.root_run_id, depth=depth, logger=log,
                _runner=self, _invocation=invocation, _path=(*path, name),
            )
            output = definition.run(ctx, parsed)
            if inspect.isawaitable(output):
                output = await output
            if definition.output_schema:
                output = definition.output_schema.model_validate(output).model_dump()
        except asyncio.CancelledError:
            log.info("Agent run cancelled")
            raise
        except Exception as e:
            log.error("Agent run failed", error=str(e),
                      duration_ms=int((time.monotonic() - started) * 1000))
            raise

        duration_ms = int((time.monotonic() - started) * 1000)
        invocation.trace.append(AgentTraceEntry(
            run_id=run_id,
            parent_run_id=parent_run_id,
            agent_name=name,
            input=input,
            output=output,
            started_at=started_at,
            finished_at=_now_iso(),
            duration_ms=duration_ms,
        ))
        log.info("Agent run completed", duration_ms=duration_ms)
        return output


class AgentRunHistory:
    """Per-story JSON-lines log of completed top-level runs, oldest first on disk."""

    def __init__(self, data_dir: Path, limit: int = HISTORY_LIMIT):
        self.data_dir = Path(data_dir)
        self.limit = limit

    def history_path(self, story_id: str) -> Path:
        return self.data_dir / "stories" / story_id / HISTORY_FILE

    def _read_lines(self, path: Path) -> list[str]:
        if not path.is_file():
            return []
        return [line for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]

    async def record(self, record: AgentRunRecord) -> None:
        path = self.history_path(record.story_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(to_jsonable_python(record.to_dict(), fallback=str))
        with open(path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

        lines = self._read_lines(path)
        if len(lines) > self.limit:
            path.write_text("\n".join(lines[-self.limit:]) + "\n", encoding="utf-8")

    async def list_agent_runs(self, story_id: str, limit: int = 30) -> list[AgentRunRecord]:
        """Most recent runs first."""
        records = []
        for line in reversed(self._read_lines(self.history_path(story_id))):
            try:
                records.append(AgentRunRecord.from_dict(json.loads(line)))
            except (json.JSONDecodeError, TypeError):
                logger.warning("Skipping unreadable agent run record", story_id=story_id)
                continue
            if len(records) >= limit:
                break
        return records

    async def clear(self, story_id: str) -> None:
        self.history_path(story_id).unlink(missing_ok=True)
