"""Agent CLI invocation (stream-json over stdio).

One call to AgentRunner.invoke() runs one turn of the agent as a
subprocess. The prompt goes in on stdin as a stream-json user record; the
agent streams typed records back on stdout. Tool-use permission requests
arrive as control requests and are answered on stdin.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from .agent_events import (
    AssistantEvent,
    ControlRequestEvent,
    ControlResponseEvent,
    ResultEvent,
    SystemEvent,
    parse_event,
)
from .config import DEFAULT_SYSTEM_PROMPT
from .models import AgentErrorKind, AgentResult, PermissionRequest

logger = logging.getLogger(__name__)

STREAM_LIMIT = 16 * 1024 * 1024  # Single stream-json lines can carry large tool results

ABORTED_OUTPUT = "Response was stopped."

_AUTH_PATTERNS = re.compile(
    r"invalid api key|authentication|unauthorized|\b401\b|/login|oauth token|credit balance",
    re.IGNORECASE,
)
_RESUME_PATTERNS = re.compile(
    r"no conversation found|session not found|could not resume|unable to resume",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class AutoBypass:
    """Every tool use is pre-authorized."""


@dataclass(frozen=True)
class Gated:
    """Every tool use is routed through on_request and blocks until it resolves."""
    on_request: Callable[[PermissionRequest], Awaitable[bool]]


PermissionStrategy = Union[AutoBypass, Gated]


@dataclass
class AgentRunnerConfig:
    """Configuration for agent invocations."""
    command: str = "claude"
    model: Optional[str] = None
    max_budget_usd: Optional[float] = None
    api_key: Optional[str] = None
    timeout_ms: int = 600_000
    kill_grace_seconds: float = 5.0
    append_system_prompt: Optional[str] = DEFAULT_SYSTEM_PROMPT
    extra_args: list[str] = field(default_factory=list)

    @classmethod
    def from_config(cls, config: dict) -> "AgentRunnerConfig":
        agent = config.get("agent", {})
        budget = agent.get("max_budget_usd")
        return cls(
            command=agent.get("command", "claude"),
            model=agent.get("model"),
            max_budget_usd=float(budget) if budget else None,
            api_key=agent.get("api_key") or None,
            timeout_ms=agent.get("timeout_ms", 600_000),
            kill_grace_seconds=agent.get("kill_grace_seconds", 5.0),
            append_system_prompt=agent.get("append_system_prompt", DEFAULT_SYSTEM_PROMPT),
            extra_args=agent.get("extra_args", []),
        )


@dataclass
class CliStatus:
    """Result of the startup CLI health check."""
    available: bool
    version: Optional[str] = None
    error: Optional[str] = None


def classify_failure(message: str, is_resume: bool) -> AgentErrorKind:
    """Map an agent error message onto the error taxonomy."""
    if _AUTH_PATTERNS.search(message):
        return AgentErrorKind.AUTH_FAILURE
    if is_resume and _RESUME_PATTERNS.search(message):
        return AgentErrorKind.RESUME_FAILURE
    return AgentErrorKind.AGENT_ERROR


class AgentRunHandle:
    """A running agent turn: await .result, or call cancel()."""

    def __init__(self, task: asyncio.Task, abort_event: asyncio.Event):
        self._task = task
        self._abort = abort_event

    @property
    def result(self) -> "asyncio.Task[AgentResult]":
        return self._task

    @property
    def cancelled(self) -> bool:
        return self._abort.is_set()

    def cancel(self):
        """Ask the run to stop. The result resolves to an ABORTED AgentResult."""
        self._abort.set()


class _AgentRun:
    """Per-invocation state: the process, what it has said, and pending approvals."""

    def __init__(self, proc: asyncio.subprocess.Process, strategy: PermissionStrategy, is_resume: bool):
        self.proc = proc
        self.strategy = strategy
        self.is_resume = is_resume
        self.parsed_any = False
        self.raw_lines: list[str] = []
        self.stderr_lines: list[str] = []
        self.last_text = ""
        self.thinking: list[str] = []
        self.session_id: Optional[str] = None
        self.result: Optional[ResultEvent] = None
        self._permission_tasks: set[asyncio.Task] = set()

    async def send(self, msg: dict[str, Any]):
        stdin = self.proc.stdin
        if stdin is None or stdin.is_closing():
            logger.warning(f"Agent stdin closed, dropping {msg.get('type')} record")
            return
        stdin.write((json.dumps(msg) + "\n").encode("utf-8"))
        try:
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning(f"Agent stdin write failed: {e}")

    async def send_prompt(self, prompt: str, session_id: Optional[str]):
        await self.send({
            "type": "control_request",
            "request_id": f"init_{uuid.uuid4().hex[:8]}",
            "request": {"subtype": "initialize", "hooks": None},
        })
        await self.send({
            "type": "user",
            "session_id": session_id or "",
            "message": {"role": "user", "content": prompt},
            "parent_tool_use_id": None,
        })

    def close_stdin(self):
        if self.proc.stdin and not self.proc.stdin.is_closing():
            self.proc.stdin.close()

    async def handle_line(self, line: str):
        event = parse_event(line)
        if event is None:
            if line.strip():
                self.raw_lines.append(line)
            return
        self.parsed_any = True

        if isinstance(event, SystemEvent):
            if event.session_id:
                self.session_id = event.session_id
        elif isinstance(event, AssistantEvent):
            if event.texts:
                self.last_text = event.texts[-1]
            self.thinking.extend(event.thinking)
        elif isinstance(event, ResultEvent):
            self.result = event
            if event.session_id:
                self.session_id = event.session_id
            # Nothing more to say; closing stdin lets the CLI exit
            self.close_stdin()
        elif isinstance(event, ControlRequestEvent):
            if event.subtype == "can_use_tool":
                task = asyncio.create_task(self._answer_permission(event))
                self._permission_tasks.add(task)
                task.add_done_callback(self._permission_tasks.discard)
            else:
                await self.send({
                    "type": "control_response",
                    "response": {
                        "subtype": "error",
                        "request_id": event.request_id,
                        "error": f"Unsupported control request: {event.subtype}",
                    },
                })
        elif isinstance(event, ControlResponseEvent):
            if event.error:
                logger.warning(f"Agent rejected control request {event.request_id}: {event.error}")

    async def _answer_permission(self, event: ControlRequestEvent):
        request = PermissionRequest(
            tool_name=event.tool_name,
            input=event.input,
            request_id=event.request_id,
        )
        if isinstance(self.strategy, Gated):
            try:
                allowed = await self.strategy.on_request(request)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Permission handler failed for {event.tool_name}: {e}", exc_info=True)
                allowed = False
        else:
            allowed = True

        if allowed:
            inner: dict[str, Any] = {"behavior": "allow", "updatedInput": event.input}
        else:
            inner = {"behavior": "deny", "message": "The user denied this tool use."}
        await self.send({
            "type": "control_response",
            "response": {
                "subtype": "success",
                "request_id": event.request_id,
                "response": inner,
            },
        })

    def cancel_pending(self):
        for task in list(self._permission_tasks):
            task.cancel()

    def build_result(self, returncode: int) -> AgentResult:
        thinking = "\n".join(self.thinking).strip() or None
        cost = self.result.total_cost_usd if self.result else None

        if self.result is not None:
            if self.result.is_error:
                message = "\n".join(self.result.errors) or self.result.result or self.last_text or "Unknown error"
                return AgentResult(
                    success=False,
                    output=message,
                    thinking=thinking,
                    error=classify_failure(message, self.is_resume),
                    session_id=self.session_id,
                    cost_usd=cost,
                )
            text = self.result.result or self.last_text
            return AgentResult(
                success=True,
                output=text.strip() or "(empty response)",
                thinking=thinking,
                session_id=self.session_id,
                cost_usd=cost,
            )

        if returncode == 0:
            if self.parsed_any:
                text = self.last_text
            else:
                logger.warning("Agent output was not stream-json, using raw stdout")
                text = "".join(self.raw_lines)
            return AgentResult(
                success=True,
                output=text.strip() or "(empty response)",
                thinking=thinking,
                session_id=self.session_id,
            )

        stderr = "".join(self.stderr_lines).strip()
        message = stderr or "".join(self.raw_lines).strip() or f"Agent exited with code {returncode}"
        return AgentResult(
            success=False,
            output=message,
            thinking=thinking,
            error=classify_failure(message, self.is_resume),
            session_id=self.session_id,
        )


class AgentRunner:
    """Starts agent turns and manages their processes."""

    def __init__(self, config: Optional[AgentRunnerConfig] = None):
        self.config = config or AgentRunnerConfig()

    @property
    def timeout_seconds(self) -> float:
        return self.config.timeout_ms / 1000

    def build_args(
        self,
        session_id: Optional[str],
        is_resume: bool,
        strategy: PermissionStrategy,
    ) -> list[str]:
        args = [
            "--output-format", "stream-json",
            "--input-format", "stream-json",
            "--verbose",
        ]
        if session_id:
            if is_resume:
                args.extend(["--resume", session_id])
            else:
                args.extend(["--session-id", session_id])
        if isinstance(strategy, Gated):
            args.extend(["--permission-mode", "default", "--permission-prompt-tool", "stdio"])
        else:
            args.extend(["--permission-mode", "bypassPermissions", "--dangerously-skip-permissions"])
        if self.config.model:
            args.extend(["--model", self.config.model])
        if self.config.max_budget_usd:
            args.extend(["--max-budget-usd", str(self.config.max_budget_usd)])
        if self.config.append_system_prompt:
            args.extend(["--append-system-prompt", self.config.append_system_prompt])
        args.extend(self.config.extra_args)
        return args

    def _env(self) -> Optional[dict[str, str]]:
        if not self.config.api_key:
            return None
        env = dict(os.environ)
        env["ANTHROPIC_API_KEY"] = self.config.api_key
        return env

    def invoke(
        self,
        prompt: str,
        session_id: Optional[str],
        is_resume: bool,
        working_dir: str,
        strategy: Optional[PermissionStrategy] = None,
    ) -> AgentRunHandle:
        """Start one agent turn. Must be called from within a running event loop."""
        abort_event = asyncio.Event()
        task = asyncio.create_task(
            self._run(prompt, session_id, is_resume, working_dir, strategy or AutoBypass(), abort_event)
        )
        return AgentRunHandle(task, abort_event)

    async def _run(
        self,
        prompt: str,
        session_id: Optional[str],
        is_resume: bool,
        working_dir: str,
        strategy: PermissionStrategy,
        abort_event: asyncio.Event,
    ) -> AgentResult:
        args = self.build_args(session_id, is_resume, strategy)
        mode = "resume" if is_resume else "new"
        logger.info(f"Starting agent ({mode}) session={session_id} cwd={working_dir}")

        try:
            proc = await asyncio.create_subprocess_exec(
                self.config.command,
                *args,
                cwd=working_dir,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env(),
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            logger.error(f"Failed to start agent '{self.config.command}': {e}")
            return AgentResult(
                success=False,
                output=f"Failed to run agent: {e}",
                error=AgentErrorKind.SPAWN_FAILURE,
            )

        run = _AgentRun(proc, strategy, is_resume)
        reader = asyncio.create_task(self._read_stdout(run))
        stderr_reader = asyncio.create_task(self._read_stderr(run))
        aborter = asyncio.create_task(abort_event.wait())

        try:
            await run.send_prompt(prompt, session_id)
            done, _ = await asyncio.wait(
                {reader, aborter},
                timeout=self.timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if reader in done:
                reader.result()
                returncode = await proc.wait()
                await stderr_reader
                result = run.build_result(returncode)
                logger.info(
                    f"Agent finished session={session_id} rc={returncode} success={result.success}"
                )
                return result

            await self._terminate(proc)
            if abort_event.is_set():
                logger.info(f"Agent run aborted session={session_id}")
                return AgentResult(
                    success=False,
                    output=ABORTED_OUTPUT,
                    error=AgentErrorKind.ABORTED,
                )
            logger.warning(f"Agent run timed out after {self.timeout_seconds:.0f}s session={session_id}")
            return AgentResult(
                success=False,
                output=f"No response within {self.timeout_seconds:.0f}s (timeout).",
                error=AgentErrorKind.TIMEOUT,
            )
        except asyncio.CancelledError:
            await self._terminate(proc)
            raise
        except Exception as e:
            logger.error(f"Agent run failed session={session_id}: {e}", exc_info=True)
            await self._terminate(proc)
            return AgentResult(
                success=False,
                output=f"Failed to run agent: {e}",
                error=AgentErrorKind.AGENT_ERROR,
            )
        finally:
            aborter.cancel()
            reader.cancel()
            stderr_reader.cancel()
            run.cancel_pending()

    async def _read_stdout(self, run: _AgentRun):
        assert run.proc.stdout
        while True:
            line = await run.proc.stdout.readline()
            if not line:
                break
            await run.handle_line(line.decode("utf-8", errors="replace"))

    async def _read_stderr(self, run: _AgentRun):
        assert run.proc.stderr
        while True:
            line = await run.proc.stderr.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace")
            run.stderr_lines.append(text)
            logger.debug(f"agent stderr: {text.rstrip()}")

    async def _terminate(self, proc: asyncio.subprocess.Process):
        """SIGTERM, then SIGKILL if the process outlives the grace period."""
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.config.kill_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"Agent pid={proc.pid} ignored SIGTERM, killing")
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()

    async def check_cli_status(self, working_dir: str) -> CliStatus:
        """Check that the agent binary exists and accepts our credentials."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self.config.command, "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env(),
            )
        except OSError as e:
            logger.error(f"Agent CLI not found: {e}")
            return CliStatus(available=False, error="Agent CLI not found.")

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=30)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return CliStatus(available=False, error="Agent CLI did not answer --version.")

        if proc.returncode != 0:
            return CliStatus(available=False, error="Agent CLI not found.")
        version = stdout.decode("utf-8", errors="replace").strip().split("\n")[0]

        result = await self.invoke("Reply with only: ok", None, False, working_dir).result
        if result.success:
            return CliStatus(available=True, version=version)
        return CliStatus(
            available=False,
            version=version,
            error=f"CLI found ({version}) but the test prompt failed.\n{result.output}",
        )
