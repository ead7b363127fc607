"""Agent process lifecycle: spawn, stream, stop.

AgentManager owns the process registry (at most one live agent CLI
process per agent id) and the session tracker. Each turn runs as a
background task:

    reader task ── decoded events ──> bounded queue ──> consumer loop
    (stdout -> StreamDecoder)                           (MessageAggregator)

The consumer is the only code touching a turn's aggregator, so events
of one agent are processed strictly in order. Registry mutations never
span an ``await`` and are therefore atomic on the event loop.

stop_agent() sends SIGTERM and forgets the process immediately; the
turn task still reaps the process and finalizes whatever it streamed,
exactly once.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass
from typing import Any

from .aggregator import MessageAggregator
from .arguments import build_agent_args
from .config import EngineConfig, EventCallback, fire_event
from .errors import AgentBinaryNotFoundError, AgentProcessError, AgentSpawnError
from .interfaces import ConversationRepository, TitleGenerator
from .lifecycle import is_terminal, validate_transition
from .models import AgentStatus, TurnRequest, TurnState
from .protocol import StreamDecoder
from .session_tracker import SessionDecision, SessionTracker
from chorus.shared.services.session_naming import generate_title_from_message

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _StreamClosed:
    """Reader reached EOF and reaped the process."""
    exit_code: int | None


@dataclass(frozen=True)
class _StreamFailed:
    """Reader hit an OS-level error."""
    error: BaseException


def _normalize_exit_code(returncode: int | None) -> int | None:
    """Map asyncio's negative "killed by signal N" codes to None."""
    if returncode is None or returncode < 0:
        return None
    return returncode


class TurnHandle:
    """One agent CLI invocation, from spawn to exit."""

    def __init__(
        self,
        request: TurnRequest,
        aggregator: MessageAggregator,
        args: list[str],
        decision: SessionDecision,
    ) -> None:
        self.request = request
        self.aggregator = aggregator
        self.args = args
        self.decision = decision
        self.process: asyncio.subprocess.Process | None = None
        self.task: asyncio.Task | None = None
        self.exit_code: int | None = None
        self.error: str | None = None
        self.stop_requested = False
        # Set once send_message() has finished spawning (or failing).
        self.launched = asyncio.Event()
        self._state = TurnState.IDLE
        self._closed = False

    @property
    def agent_id(self) -> str:
        return self.request.agent_id

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    def transition(self, target: TurnState) -> None:
        validate_transition(self._state, target)
        logger.debug(
            "Turn for agent %s: %s -> %s",
            self.agent_id, self._state.value, target.value,
        )
        self._state = target

    def terminate(self) -> bool:
        """Send SIGTERM to the process if it is still running."""
        proc = self.process
        if proc is None or proc.returncode is not None:
            return False
        try:
            proc.terminate()
        except ProcessLookupError:
            return False
        logger.info(
            "Sent SIGTERM to agent %s (pid=%s)", self.agent_id, proc.pid,
        )
        return True

    def mark_closed(self) -> bool:
        """Claim the single close/error handling slot for this turn."""
        if self._closed:
            return False
        self._closed = True
        return True

    async def wait(self) -> TurnState:
        """Wait for the turn's background task to finish."""
        await self.launched.wait()
        if self.task is not None:
            await asyncio.shield(self.task)
        return self._state


class AgentManager:
    """Runs agent CLI turns with single-flight-per-agent semantics."""

    def __init__(
        self,
        repository: ConversationRepository,
        *,
        config: EngineConfig | None = None,
        event_callback: EventCallback | None = None,
        title_generator: TitleGenerator = generate_title_from_message,
        tracker: SessionTracker | None = None,
    ) -> None:
        self._repository = repository
        self._config = config or EngineConfig()
        self._event_callback = event_callback
        self._title_generator = title_generator
        self._tracker = tracker or SessionTracker(self._config.session_max_age_days)
        self._processes: dict[str, TurnHandle] = {}
        self._spawning: dict[str, TurnHandle] = {}

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def tracker(self) -> SessionTracker:
        return self._tracker

    # ── Agent CLI detection ───────────────────────────────────

    def detect_agent_binary(self) -> str | None:
        """Absolute path of the agent CLI, or None when not installed."""
        return shutil.which(self._config.agent_command)

    def is_agent_available(self) -> bool:
        return self.detect_agent_binary() is not None

    # ── Registry ──────────────────────────────────────────────

    def is_running(self, agent_id: str) -> bool:
        return agent_id in self._processes

    def live_agents(self) -> list[str]:
        return list(self._processes)

    def get_handle(self, agent_id: str) -> TurnHandle | None:
        return self._processes.get(agent_id)

    def _register(self, handle: TurnHandle) -> None:
        existing = self._processes.get(handle.agent_id)
        if existing is not None and existing is not handle:
            # Another turn won a race to register; keep only the newest.
            self._kill(existing)
        self._processes[handle.agent_id] = handle

    def _unregister(self, handle: TurnHandle) -> None:
        if self._processes.get(handle.agent_id) is handle:
            del self._processes[handle.agent_id]

    def _is_superseded(self, handle: TurnHandle) -> bool:
        current = self._processes.get(handle.agent_id) or self._spawning.get(handle.agent_id)
        return current is not None and current is not handle

    def _kill(self, handle: TurnHandle) -> None:
        handle.stop_requested = True
        if not is_terminal(handle.state) and handle.state is not TurnState.IDLE:
            handle.transition(TurnState.KILLED)
        handle.terminate()

    # ── Sessions ──────────────────────────────────────────────

    def get_session_id(self, agent_id: str) -> str | None:
        return self._tracker.get_session_id(agent_id)

    def clear_session(self, agent_id: str) -> None:
        self._tracker.clear_session(agent_id)

    # ── Status ────────────────────────────────────────────────

    async def _set_status(
        self,
        agent_id: str,
        status: AgentStatus,
        error: str | None = None,
    ) -> None:
        event: dict[str, Any] = {
            "event": "agent_status",
            "agent_id": agent_id,
            "status": status.value,
        }
        if error is not None:
            event["error"] = error
        await fire_event(self._event_callback, event)

    # ── Turns ─────────────────────────────────────────────────

    def stop_agent(self, agent_id: str) -> bool:
        """Terminate the agent's live process without waiting for it.

        Returns True if there was something to stop.
        """
        stopped = False
        pending = self._spawning.pop(agent_id, None)
        if pending is not None:
            pending.stop_requested = True
            stopped = True
        handle = self._processes.pop(agent_id, None)
        if handle is not None:
            self._kill(handle)
            stopped = True
        if stopped:
            logger.info("Stopped agent %s", agent_id)
        return stopped

    async def send_message(self, request: TurnRequest) -> TurnHandle:
        """Start a turn. Returns once the process is spawned (or failed).

        Await ``handle.wait()`` to block until the turn is finalized.
        """
        agent_id = request.agent_id
        self.stop_agent(agent_id)

        decision = self._tracker.resolve(request.session)
        args = build_agent_args(
            request.settings, decision.resume_session_id, request.prompt,
        )
        aggregator = MessageAggregator(
            conversation_id=request.conversation_id,
            agent_id=agent_id,
            prompt=request.prompt,
            session=request.session,
            requested_session_id=decision.resume_session_id,
            repository=self._repository,
            tracker=self._tracker,
            title_generator=self._title_generator,
            event_callback=self._event_callback,
        )
        handle = TurnHandle(request, aggregator, args, decision)
        handle.transition(TurnState.SPAWNING)
        self._spawning[agent_id] = handle
        try:
            await self._launch(handle)
        finally:
            handle.launched.set()
        return handle

    async def _launch(self, handle: TurnHandle) -> None:
        agent_id = handle.agent_id
        await self._set_status(agent_id, AgentStatus.BUSY)
        try:
            await handle.aggregator.append_user_prompt()
            process = await self._spawn(handle)
        except Exception as exc:
            if self._spawning.get(agent_id) is handle:
                del self._spawning[agent_id]
            await self._fail_start(handle, exc)
            return

        if self._spawning.get(agent_id) is handle:
            del self._spawning[agent_id]
        handle.process = process
        if process.stdin is not None:
            # Single-shot prompt mode: nothing is ever written to stdin.
            process.stdin.close()

        if handle.stop_requested:
            # stop_agent() ran while we were spawning.
            handle.transition(TurnState.KILLED)
            handle.terminate()
        else:
            self._register(handle)
            handle.transition(TurnState.STREAMING)
        logger.info(
            "Spawned agent %s (pid=%s, resume=%s)",
            agent_id, process.pid, handle.decision.resume_session_id or "-",
        )

        handle.task = asyncio.create_task(
            self._run_turn(handle), name=f"agent-turn-{agent_id}",
        )

    async def _spawn(self, handle: TurnHandle) -> asyncio.subprocess.Process:
        binary = self.detect_agent_binary()
        if binary is None:
            raise AgentBinaryNotFoundError(self._config.agent_command)

        env = os.environ.copy()
        env.update(self._config.agent_env)
        logger.debug("Spawning %s %s", binary, " ".join(handle.args[:-1]))
        try:
            return await asyncio.create_subprocess_exec(
                binary,
                *handle.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=handle.request.cwd,
                env=env,
            )
        except OSError as exc:
            raise AgentSpawnError(handle.agent_id, str(exc)) from exc

    async def _record_error(self, handle: TurnHandle, text: str) -> None:
        try:
            await handle.aggregator.append_error(text)
        except Exception:
            logger.exception(
                "Could not record error for agent %s: %s", handle.agent_id, text,
            )

    async def _fail_start(self, handle: TurnHandle, exc: Exception) -> None:
        if isinstance(exc, AgentBinaryNotFoundError):
            text = f"{exc}. Please install Claude Code first."
            error = "Agent CLI not found"
        else:
            text = str(exc)
            error = text
        if isinstance(exc, (AgentBinaryNotFoundError, AgentSpawnError)):
            logger.error("Turn for agent %s failed to start: %s", handle.agent_id, exc)
        else:
            logger.exception("Turn for agent %s failed to start", handle.agent_id)
        handle.error = error
        if not is_terminal(handle.state):
            handle.transition(TurnState.ERRORED)
        handle.mark_closed()
        await self._record_error(handle, text)
        if not self._is_superseded(handle):
            await self._set_status(handle.agent_id, AgentStatus.ERROR, error=error)

    async def _run_turn(self, handle: TurnHandle) -> None:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._config.event_queue_size)
        reader = asyncio.create_task(self._pump_stdout(handle, queue))
        stderr_drain = asyncio.create_task(self._drain_stderr(handle))
        try:
            while True:
                item = await queue.get()
                if isinstance(item, _StreamClosed):
                    await self._on_exit(handle, item.exit_code)
                    break
                if isinstance(item, _StreamFailed):
                    await self._on_process_error(handle, item.error)
                    break
                await handle.aggregator.handle(item)
        except asyncio.CancelledError:
            handle.terminate()
            raise
        except Exception as exc:
            logger.exception("Turn for agent %s crashed", handle.agent_id)
            await self._on_process_error(handle, exc)
        finally:
            if not reader.done():
                reader.cancel()
            if handle.process is not None and handle.process.returncode is None:
                stderr_drain.cancel()
            await asyncio.gather(reader, stderr_drain, return_exceptions=True)

    async def _pump_stdout(self, handle: TurnHandle, queue: asyncio.Queue) -> None:
        proc = handle.process
        decoder = StreamDecoder()
        try:
            while True:
                chunk = await proc.stdout.read(self._config.read_chunk_size)
                if not chunk:
                    break
                for event in decoder.feed(chunk):
                    await queue.put(event)
            for event in decoder.flush():
                await queue.put(event)
            returncode = await proc.wait()
        except OSError as exc:
            await queue.put(_StreamFailed(
                AgentProcessError(handle.agent_id, str(exc))
            ))
            return
        await queue.put(_StreamClosed(_normalize_exit_code(returncode)))

    async def _drain_stderr(self, handle: TurnHandle) -> None:
        stream = handle.process.stderr
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").strip()
            if text:
                logger.warning("agent %s stderr: %s", handle.agent_id, text)

    async def _on_exit(self, handle: TurnHandle, exit_code: int | None) -> None:
        if not handle.mark_closed():
            return
        self._unregister(handle)
        handle.exit_code = exit_code
        if handle.state is TurnState.STREAMING:
            handle.transition(TurnState.EXITED)
        logger.info(
            "Agent %s exited (code=%s, state=%s)",
            handle.agent_id, exit_code, handle.state.value,
        )

        try:
            await handle.aggregator.finalize()
            if exit_code not in (0, None):
                await handle.aggregator.append_error(
                    f"Process exited with code {exit_code}"
                )
        except Exception as exc:
            logger.exception("Could not record output of agent %s", handle.agent_id)
            handle.error = str(exc)
            if not self._is_superseded(handle):
                await self._set_status(
                    handle.agent_id, AgentStatus.ERROR, error=str(exc),
                )
            return

        if self._is_superseded(handle):
            logger.debug(
                "Not reporting ready for superseded turn of agent %s",
                handle.agent_id,
            )
            return
        await self._set_status(handle.agent_id, AgentStatus.READY)

    async def _on_process_error(self, handle: TurnHandle, exc: BaseException) -> None:
        if not handle.mark_closed():
            return
        self._unregister(handle)
        if handle.state is TurnState.KILLED:
            # Keep what the stopped turn streamed before the failure.
            logger.info(
                "Ignoring error from stopped agent %s: %s", handle.agent_id, exc,
            )
            try:
                await handle.aggregator.finalize()
            except Exception:
                logger.exception(
                    "Could not record output of stopped agent %s", handle.agent_id,
                )
            if not self._is_superseded(handle):
                await self._set_status(handle.agent_id, AgentStatus.READY)
            return

        handle.transition(TurnState.ERRORED)
        handle.error = str(exc)
        handle.terminate()
        logger.error("Agent %s process error: %s", handle.agent_id, exc)
        await self._record_error(handle, str(exc))
        if not self._is_superseded(handle):
            await self._set_status(handle.agent_id, AgentStatus.ERROR, error=str(exc))

    async def shutdown(self) -> None:
        """Stop every live turn and wait for the processes to be reaped."""
        handles = list(self._processes.values()) + list(self._spawning.values())
        for agent_id in {h.agent_id for h in handles}:
            self.stop_agent(agent_id)
        if handles:
            # wait() also covers turns still spawning: it blocks until
            # their task exists.
            await asyncio.gather(
                *(h.wait() for h in handles), return_exceptions=True,
            )
