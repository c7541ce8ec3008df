"""Async runner for the coding-agent CLI."""

from __future__ import annotations

import abc
import asyncio
import logging
import shutil
import signal
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Iterable

from ..config import ForgeSettings
from .protocol import (
    ExitEvent,
    FailureEvent,
    FailureReason,
    SessionEvent,
    SessionResult,
    StreamParser,
    ThinkingEvent,
    ToolCallEvent,
    TurnResultEvent,
    truncate,
)
from .session_log import SessionLog
from .utils import build_input_message, sanitize_environment

logger = logging.getLogger(__name__)

# stream-json lines carry whole tool results; the asyncio default of 64 KiB is too small.
STREAM_LIMIT = 16 * 1024 * 1024


class AgentRunnerError(RuntimeError):
    """Base class for agent runner errors."""


class AgentNotFoundError(AgentRunnerError):
    """Raised when the agent CLI executable cannot be located."""


class AgentSpawnError(AgentRunnerError):
    """Raised when the agent process cannot be started."""


class SessionInputError(AgentRunnerError):
    """Raised when input cannot be delivered to a session."""


class AgentMode(str, Enum):
    ONE_SHOT = "one_shot"
    BIDIRECTIONAL = "bidirectional"
    AUTONOMOUS = "autonomous"


class SessionState(str, Enum):
    RUNNING = "running"
    WAITING_FOR_INPUT = "waiting_for_input"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(slots=True)
class AgentExecutionResult:
    """Holds the outcome of a blocking agent CLI invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass(slots=True)
class LaunchSpec:
    """Everything needed to spawn one agent session."""

    session_id: str
    task: str
    worktree_path: Path
    mode: AgentMode = AgentMode.BIDIRECTIONAL
    system_prompt: str = ""
    max_turns: int | None = None
    timeout_seconds: float | None = None
    max_cost_usd: float | None = None
    max_duration_seconds: float | None = None


def _signal_name(returncode: int | None) -> str | None:
    if returncode is None or returncode >= 0:
        return None
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return f"signal {-returncode}"


class _SessionChannel(abc.ABC):
    """State machine and event queue shared by live and scripted sessions."""

    def __init__(
        self,
        spec: LaunchSpec,
        *,
        log: SessionLog | None = None,
        empty_exit_is_success: bool = True,
    ) -> None:
        self.spec = spec
        self._log = log
        self._empty_exit_is_success = empty_exit_is_success
        self._queue: asyncio.Queue[SessionEvent | None] = asyncio.Queue()
        self._closed = asyncio.Event()
        self._state = SessionState.RUNNING
        self._failed = False
        self._settled = False
        self._saw_result = False
        self._stop_requested = False
        self._returncode: int | None = None
        self._cost_usd: float | None = None

    @property
    def session_id(self) -> str:
        return self.spec.session_id

    @property
    def mode(self) -> AgentMode:
        return self.spec.mode

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def returncode(self) -> int | None:
        return self._returncode

    @property
    def cost_usd(self) -> float | None:
        return self._cost_usd

    @property
    def exited(self) -> bool:
        return self._closed.is_set()

    async def events(self) -> AsyncIterator[SessionEvent]:
        """Yield this session's events in emission order, ending after the exit event."""

        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    async def wait(self) -> int | None:
        await self._closed.wait()
        return self._returncode

    def _write_log(self, level: str, message: str) -> None:
        if self._log is not None:
            self._log.write(level, message)

    def _emit(self, event: SessionEvent) -> None:
        self._queue.put_nowait(event)

    def _fail(self, reason: FailureReason, message: str) -> bool:
        if self._failed:
            return False
        self._failed = True
        self._state = SessionState.ERROR
        self._write_log("error", f"Session failed ({reason.value}): {message}")
        self._emit(FailureEvent(reason=reason, message=message))
        return True

    def _cost_breached(self, result: SessionResult) -> bool:
        ceiling = self.spec.max_cost_usd
        if self.mode is not AgentMode.AUTONOMOUS or ceiling is None or result.cost_usd is None:
            return False
        return result.cost_usd >= ceiling

    def _on_stream_event(self, event: SessionEvent) -> None:
        if self._failed:
            return

        if isinstance(event, FailureEvent):
            if self._fail(event.reason, event.message):
                self._after_protocol_failure()
            return

        if isinstance(event, ThinkingEvent):
            self._write_log("info", f"Text: {event.text[:500]}")
        elif isinstance(event, ToolCallEvent):
            self._write_log("info", f"Tool: {event.tool} {event.summary}".rstrip())
        elif isinstance(event, TurnResultEvent):
            if self._settled:
                return
            result = event.result
            cost = "?" if result.cost_usd is None else f"{result.cost_usd}"
            self._write_log("info", f"Turn complete - turns: {result.turns}, cost: ${cost}")
            self._saw_result = True
            if result.cost_usd is not None:
                self._cost_usd = result.cost_usd
            if self._cost_breached(result):
                message = (
                    f"Session killed: cost ${result.cost_usd:.2f} exceeded "
                    f"${self.spec.max_cost_usd:.2f} limit"
                )
                if self._fail(FailureReason.COST_CEILING, message):
                    self._on_ceiling_breach()
                return
            if self.mode is AgentMode.BIDIRECTIONAL:
                self._state = SessionState.WAITING_FOR_INPUT
            elif self.mode is AgentMode.ONE_SHOT:
                self._settled = True

        self._emit(event)

    def _finish(self, returncode: int | None, signal_name: str | None = None) -> None:
        if self.exited:
            return
        self._returncode = returncode
        self._write_log("info", f"Process exited - code: {returncode}, signal: {signal_name}")

        if not self._failed:
            if self._stop_requested:
                self._state = SessionState.COMPLETED
            elif returncode not in (0, None):
                reason = f"killed by signal {signal_name}" if signal_name else f"exited with code {returncode}"
                self._fail(FailureReason.EXIT, f"Agent CLI {reason}")
            elif not self._saw_result and not self._empty_exit_is_success:
                self._fail(FailureReason.EXIT, "Agent CLI exited without producing a result")
            else:
                if not self._saw_result:
                    self._saw_result = True
                    self._emit(TurnResultEvent(result=SessionResult(), synthetic=True))
                self._state = SessionState.COMPLETED

        self._emit(ExitEvent(returncode=returncode, signal=signal_name))
        self._queue.put_nowait(None)
        self._closed.set()

    @abc.abstractmethod
    def _on_ceiling_breach(self) -> None:
        """Stop the process after a cost ceiling was crossed."""

    @abc.abstractmethod
    def _after_protocol_failure(self) -> None:
        """React to an error result reported by the agent itself."""


class AgentSession(_SessionChannel):
    """Live handle on one spawned agent process."""

    def __init__(
        self,
        spec: LaunchSpec,
        process: asyncio.subprocess.Process,
        *,
        log: SessionLog,
        kill_grace_seconds: float = 5.0,
        empty_exit_is_success: bool = True,
    ) -> None:
        super().__init__(spec, log=log, empty_exit_is_success=empty_exit_is_success)
        self._process = process
        self._parser = StreamParser()
        self._kill_grace = kill_grace_seconds
        self._background: set[asyncio.Task] = set()
        self._stdout_task = asyncio.create_task(self._pump_stdout())
        self._stderr_task = asyncio.create_task(self._pump_stderr())
        self._deadline_task = self._arm_deadline()
        self._exit_task = asyncio.create_task(self._watch_exit())

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def log(self) -> SessionLog | None:
        return self._log

    async def send(self, text: str) -> None:
        """Send a follow-up user message to a bidirectional session."""

        if self.mode is not AgentMode.BIDIRECTIONAL:
            raise SessionInputError(f"Session {self.session_id} does not accept input in {self.mode.value} mode")
        stdin = self._process.stdin
        if stdin is None or stdin.is_closing() or self.exited:
            self._write_log("error", "Cannot send message - stdin is closed")
            raise SessionInputError(f"Input for session {self.session_id} is closed")

        self._write_log("info", f"User message: {text[:200]}")
        self._state = SessionState.RUNNING
        stdin.write(build_input_message(text).encode("utf-8"))
        try:
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise SessionInputError(f"Input for session {self.session_id} is closed") from exc

    def close_input(self) -> None:
        """Close stdin; the agent finishes its current turn and exits."""

        stdin = self._process.stdin
        if stdin is not None and not stdin.is_closing():
            self._write_log("info", "Closing stdin - session will end after current turn")
            stdin.close()

    async def kill(self) -> None:
        """Stop the process: SIGTERM, then SIGKILL after the grace period. No-op once exited."""

        if self.exited or self._process.returncode is not None:
            return
        self._stop_requested = True
        self._write_log("info", "Kill requested")
        await self._terminate()

    def terminate_now(self) -> None:
        """Synchronous SIGTERM for shutdown hooks that cannot await."""

        if self._process.returncode is not None:
            return
        self._stop_requested = True
        try:
            self._process.terminate()
        except ProcessLookupError:
            pass

    async def _terminate(self) -> None:
        if self._process.returncode is not None:
            return
        try:
            self._process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._process.wait()), timeout=self._kill_grace)
        except asyncio.TimeoutError:
            self._write_log("error", f"No exit {self._kill_grace:g}s after SIGTERM, sending SIGKILL")
            try:
                self._process.kill()
            except ProcessLookupError:
                pass

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _on_ceiling_breach(self) -> None:
        self._spawn(self._terminate())

    def _after_protocol_failure(self) -> None:
        if self.mode is AgentMode.BIDIRECTIONAL:
            self.close_input()

    def _arm_deadline(self) -> asyncio.Task | None:
        if self.mode is AgentMode.ONE_SHOT and self.spec.timeout_seconds:
            seconds = self.spec.timeout_seconds
            message = f"Session timed out after {seconds:g}s"
        elif self.mode is AgentMode.AUTONOMOUS and self.spec.max_duration_seconds:
            seconds = self.spec.max_duration_seconds
            message = f"Session killed: exceeded {seconds / 60:g} minute time limit"
        else:
            return None
        return asyncio.create_task(self._deadline(seconds, message))

    async def _deadline(self, seconds: float, message: str) -> None:
        await asyncio.sleep(seconds)
        if self._process.returncode is None and self._fail(FailureReason.TIMEOUT, message):
            await self._terminate()

    async def _pump_stdout(self) -> None:
        stream = self._process.stdout
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                self._write_log("error", "Dropped stdout line exceeding the stream limit")
                continue
            if not raw:
                return
            for event in self._parser.feed(raw):
                self._on_stream_event(event)

    async def _pump_stderr(self) -> None:
        stream = self._process.stderr
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                self._write_log("error", f"stderr: {line}")
                logger.debug("agent stderr", extra={"session_id": self.session_id, "line": line})

    async def _watch_exit(self) -> None:
        returncode = await self._process.wait()
        pumps = {self._stdout_task, self._stderr_task}
        _, pending = await asyncio.wait(pumps, timeout=self._kill_grace)
        for task in pending:
            task.cancel()
        if self._deadline_task is not None:
            self._deadline_task.cancel()
        self._finish(returncode, _signal_name(returncode))


class AgentRunner:
    """Spawn agent CLI sessions asynchronously."""

    def __init__(
        self,
        executable: Path | None = None,
        *,
        command: str = "claude",
        settings: ForgeSettings | None = None,
    ) -> None:
        self._executable_path = self._resolve_executable(executable, command)
        self._settings = settings or ForgeSettings()

    @staticmethod
    def _resolve_executable(explicit: Path | None, command: str = "claude") -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise AgentNotFoundError(f"Agent executable not found at {candidate}")

        binary = shutil.which(command)
        if binary is None:
            raise AgentNotFoundError(f"Agent CLI executable '{command}' not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def version(self) -> AgentExecutionResult:
        return await self._invoke("--version")

    def build_args(self, spec: LaunchSpec) -> list[str]:
        """Return the CLI argument vector for a launch (executable excluded)."""

        settings = self._settings
        args: list[str] = []
        if spec.mode is AgentMode.BIDIRECTIONAL:
            args.extend(["-p", "", "--input-format", "stream-json"])
        else:
            args.extend(["-p", spec.task])
        if spec.system_prompt:
            args.extend(["--append-system-prompt", spec.system_prompt])
        args.extend(["--output-format", "stream-json", "--verbose"])
        if settings.agent_model:
            args.extend(["--model", settings.agent_model])

        if spec.mode is AgentMode.ONE_SHOT:
            max_turns = spec.max_turns or settings.one_shot_max_turns
            args.extend(["--max-turns", str(max_turns), "--no-session-persistence"])

        if spec.mode is AgentMode.AUTONOMOUS:
            args.append("--dangerously-skip-permissions")
        else:
            args.extend(["--permission-mode", "acceptEdits"])
            for tool in settings.allowed_tools:
                args.extend(["--allowedTools", tool])
        return args

    async def start(self, spec: LaunchSpec) -> AgentSession:
        """Spawn the agent for ``spec`` and return its live handle."""

        settings = self._settings
        args = self.build_args(spec)
        log = SessionLog(settings.log_dir, spec.session_id)
        log.info(f"Starting {spec.mode.value} session in {spec.worktree_path}")
        log.info(f"Task: {truncate(spec.task, 200)}")
        log.info("Args: " + " ".join(truncate(arg, 80) for arg in args))
        if spec.mode is AgentMode.AUTONOMOUS:
            log.info(f"Limits: cost=${spec.max_cost_usd}, duration={spec.max_duration_seconds}s")

        try:
            process = await asyncio.create_subprocess_exec(
                str(self._executable_path),
                *args,
                cwd=str(spec.worktree_path),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=sanitize_environment(settings.blocked_env_keys),
                limit=STREAM_LIMIT,
            )
        except OSError as exc:
            log.error(f"Spawn error: {exc}")
            raise AgentSpawnError(f"Failed to spawn agent CLI: {exc}") from exc

        log.info(f"Spawned agent CLI ({spec.mode.value}), PID: {process.pid}")
        logger.info(
            "Spawned agent session",
            extra={"session_id": spec.session_id, "mode": spec.mode.value, "pid": process.pid},
        )

        session = AgentSession(
            spec,
            process,
            log=log,
            kill_grace_seconds=settings.kill_grace_seconds,
            empty_exit_is_success=settings.empty_exit_is_success,
        )
        if spec.mode is AgentMode.BIDIRECTIONAL:
            log.info("Sending initial task via stdin")
            await session.send(spec.task)
        else:
            session.close_input()
        return session

    async def _invoke(self, *args: str) -> AgentExecutionResult:
        cmd = [str(self._executable_path), *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(self._settings.blocked_env_keys),
        )
        stdout_bytes, stderr_bytes = await process.communicate()
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return AgentExecutionResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)


@dataclass(slots=True)
class AgentScript:
    """Scripted behaviour for one fake session: event turns and the final exit code."""

    turns: list[list[SessionEvent]] = field(default_factory=list)
    returncode: int = 0


class ScriptedAgentSession(_SessionChannel):
    """Test double replaying scripted turns through the real session state machine.

    Non-interactive sessions play every turn and exit immediately. Bidirectional
    sessions play the first turn, then one more per ``send`` until input closes.
    """

    def __init__(
        self,
        spec: LaunchSpec,
        script: AgentScript,
        *,
        empty_exit_is_success: bool = True,
    ) -> None:
        super().__init__(spec, empty_exit_is_success=empty_exit_is_success)
        self._turns = deque(script.turns)
        self._exit_code = script.returncode
        self.sent: list[str] = []
        self.pid = 0
        self._play_turn()
        if self.mode is not AgentMode.BIDIRECTIONAL:
            while self._turns and not self.exited:
                self._play_turn()
            self._finish(self._exit_code)

    def _play_turn(self) -> None:
        if not self._turns:
            return
        for event in self._turns.popleft():
            if self.exited:
                return
            self._on_stream_event(event)

    async def send(self, text: str) -> None:
        if self.mode is not AgentMode.BIDIRECTIONAL:
            raise SessionInputError(f"Session {self.session_id} does not accept input in {self.mode.value} mode")
        if self.exited:
            raise SessionInputError(f"Input for session {self.session_id} is closed")
        self.sent.append(text)
        self._state = SessionState.RUNNING
        self._play_turn()

    def close_input(self) -> None:
        self._finish(self._exit_code)

    async def kill(self) -> None:
        if self.exited:
            return
        self._stop_requested = True
        self._finish(-signal.SIGTERM, signal.SIGTERM.name)

    def terminate_now(self) -> None:
        if self.exited:
            return
        self._stop_requested = True
        self._finish(-signal.SIGTERM, signal.SIGTERM.name)

    def _on_ceiling_breach(self) -> None:
        self._turns.clear()
        self._finish(-signal.SIGTERM, signal.SIGTERM.name)

    def _after_protocol_failure(self) -> None:
        if self.mode is AgentMode.BIDIRECTIONAL:
            self.close_input()


class FakeAgentRunner(AgentRunner):
    """Test double that hands out scripted sessions in order."""

    def __init__(  # type: ignore[override]
        self,
        scripts: Iterable[AgentScript] | None = None,
        *,
        settings: ForgeSettings | None = None,
    ) -> None:
        self._scripts = list(scripts or [])
        self._launches: list[LaunchSpec] = []
        self._sessions: list[ScriptedAgentSession] = []
        self._executable_path = Path("/tmp/fake-agent")
        self._settings = settings or ForgeSettings()
        self.spawn_error: str | None = None

    def add(self, script: AgentScript) -> None:
        self._scripts.append(script)

    async def start(self, spec: LaunchSpec) -> ScriptedAgentSession:  # type: ignore[override]
        self._launches.append(spec)
        if self.spawn_error is not None:
            raise AgentSpawnError(f"Failed to spawn agent CLI: {self.spawn_error}")
        script = self._scripts.pop(0) if self._scripts else AgentScript()
        session = ScriptedAgentSession(
            spec, script, empty_exit_is_success=self._settings.empty_exit_is_success
        )
        self._sessions.append(session)
        return session

    async def _invoke(self, *args: str) -> AgentExecutionResult:  # type: ignore[override]
        return AgentExecutionResult(args=tuple(args), returncode=0, stdout="fake-agent 0.0.0", stderr="")

    @property
    def launches(self) -> list[LaunchSpec]:
        return self._launches

    @property
    def sessions(self) -> list[ScriptedAgentSession]:
        return self._sessions


__all__ = [
    "AgentExecutionResult",
    "AgentMode",
    "AgentNotFoundError",
    "AgentRunner",
    "AgentRunnerError",
    "AgentScript",
    "AgentSession",
    "AgentSpawnError",
    "FakeAgentRunner",
    "LaunchSpec",
    "ScriptedAgentSession",
    "SessionInputError",
    "SessionState",
]
