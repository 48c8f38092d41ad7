"""Agent process executor.

Spawns one external coding-agent CLI per invocation, feeds it the prompt
on stdin, streams its combined stdout/stderr back to the caller and
enforces a wall-clock timeout. Whether the *process* exited cleanly is
all this module reports; whether the *story* passed is decided by the
engine from the task store.
"""

from __future__ import annotations

import asyncio
import codecs
import inspect
import logging
import os
import shutil
import signal
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .errors import AgentSpawnError, AgentTimeoutError, ConfigurationError, ExecutionError

logger = logging.getLogger(__name__)

# (text, channel) where channel is "stdout" or "stderr"
OutputCallback = Callable[[str, str], None]

READ_CHUNK_SIZE = 4096


@dataclass
class AgentSpec:
    """How to launch one agent CLI in non-interactive, auto-approve mode."""

    name: str
    command: str
    args: List[str] = field(default_factory=list)
    install_hint: str = ""

    @property
    def argv(self) -> List[str]:
        return [self.command, *self.args]

    @classmethod
    def from_dict(cls, key: str, data: dict) -> AgentSpec:
        """Create an AgentSpec from a config mapping entry."""
        if not isinstance(data, dict) or not data.get("command"):
            raise ConfigurationError(f"Agent '{key}' needs at least a 'command'")
        args = data.get("args", [])
        if not isinstance(args, list):
            raise ConfigurationError(f"Agent '{key}': 'args' must be a list")
        return cls(
            name=data.get("name", key),
            command=str(data["command"]),
            args=[str(a) for a in args],
            install_hint=data.get("install_hint", ""),
        )


AGENTS: Dict[str, AgentSpec] = {
    "claude": AgentSpec(
        name="Claude Code",
        command="claude",
        args=["--dangerously-skip-permissions", "--print"],
        install_hint="npm install -g @anthropic-ai/claude-code",
    ),
    "codex": AgentSpec(
        name="Codex CLI",
        command="codex",
        args=["--quiet"],
        install_hint="npm install -g @openai/codex",
    ),
}


@dataclass
class ExecutionResult:
    """Outcome of a single agent invocation."""

    succeeded: bool
    output: str = ""
    exit_code: Optional[int] = None
    duration_ms: int = 0
    timed_out: bool = False


class _Resolution:
    """One-shot guard recording which side of the timeout race settled first."""

    def __init__(self) -> None:
        self.outcome: Optional[str] = None

    def settle(self, outcome: str) -> bool:
        if self.outcome is not None:
            return False
        self.outcome = outcome
        return True


class AgentRunner:
    """Runs agent CLIs as subprocesses."""

    def __init__(
        self,
        agents: Optional[Dict[str, AgentSpec]] = None,
        kill_grace: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the runner.

        Args:
            agents: Selector to launch descriptor mapping. Defaults to AGENTS.
            kill_grace: Seconds between SIGTERM and SIGKILL on timeout.
            clock: Monotonic clock in seconds, injectable for tests.
        """
        self.agents = dict(AGENTS if agents is None else agents)
        self.kill_grace = kill_grace
        self._clock = clock

    def resolve(self, selector: str) -> AgentSpec:
        """Look up the launch descriptor for ``selector``.

        Raises:
            ConfigurationError: If the selector is not configured.
        """
        spec = self.agents.get(selector)
        if spec is None:
            available = ", ".join(sorted(self.agents)) or "(none)"
            raise ConfigurationError(f"Unknown agent: {selector}. Available: {available}")
        return spec

    def is_available(self, selector: str) -> bool:
        """Check the agent's executable is on PATH without starting a session."""
        spec = self.agents.get(selector)
        if spec is None:
            return False
        return shutil.which(spec.command) is not None

    async def invoke(
        self,
        prompt: str,
        selector: str,
        cwd: Optional[Path] = None,
        timeout: Optional[float] = 600.0,
        on_output: Optional[OutputCallback] = None,
    ) -> ExecutionResult:
        """Run the agent once with ``prompt`` on stdin.

        Args:
            prompt: Full prompt text.
            selector: Agent key, e.g. "claude".
            cwd: Working directory for the agent process.
            timeout: Wall-clock limit in seconds; None disables it.
            on_output: Called with each decoded chunk as it arrives.

        Returns:
            ExecutionResult; ``succeeded`` is True only for exit code 0.

        Raises:
            ConfigurationError: Unknown selector (nothing is spawned).
            AgentSpawnError: The process could not be started.
            AgentTimeoutError: The timeout elapsed; the process was killed.
                The partial output is available on ``error.result``.
        """
        spec = self.resolve(selector)
        started = self._clock()
        chunks: List[str] = []

        def emit(text: str, channel: str) -> None:
            chunks.append(text)
            if on_output is not None:
                try:
                    on_output(text, channel)
                except Exception as e:
                    logger.warning(f"Output callback failed: {e}")

        env = {**os.environ, "FORCE_COLOR": "0"}
        logger.info(f"Invoking {spec.name}: {' '.join(spec.argv)}")
        logger.debug(f"Prompt: {prompt[:200]}...")

        try:
            proc = await asyncio.create_subprocess_exec(
                *spec.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
                env=env,
                start_new_session=(os.name == "posix"),
            )
        except OSError as e:
            result = ExecutionResult(succeeded=False, duration_ms=self._elapsed_ms(started))
            raise AgentSpawnError(f"Could not start {spec.name} ({spec.command}): {e}", result)

        resolution = _Resolution()
        process_task = asyncio.ensure_future(self._communicate(proc, prompt, emit))
        timer_task = asyncio.ensure_future(asyncio.sleep(timeout)) if timeout else None
        racers = {process_task} | ({timer_task} if timer_task else set())

        try:
            done, _ = await asyncio.wait(racers, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            resolution.settle("cancelled")
            if timer_task:
                timer_task.cancel()
            await self._terminate(proc)
            await self._drain(process_task)
            raise

        if process_task in done and resolution.settle("exited"):
            if timer_task:
                timer_task.cancel()
            duration_ms = self._elapsed_ms(started)
            try:
                exit_code = process_task.result()
            except Exception as e:
                await self._terminate(proc)
                result = ExecutionResult(
                    succeeded=False,
                    output="".join(chunks),
                    exit_code=proc.returncode,
                    duration_ms=duration_ms,
                )
                raise ExecutionError(f"Agent process failed unexpectedly: {e}", result)
            logger.info(f"{spec.name} exited with code {exit_code} after {duration_ms / 1000:.1f}s")
            return ExecutionResult(
                succeeded=exit_code == 0,
                output="".join(chunks),
                exit_code=exit_code,
                duration_ms=duration_ms,
            )

        resolution.settle("timed_out")
        logger.error(f"{spec.name} timed out after {timeout}s, terminating")
        await self._terminate(proc)
        # The late exit is drained for its output only; its exit code is discarded.
        await self._drain(process_task)
        result = ExecutionResult(
            succeeded=False,
            output="".join(chunks),
            exit_code=None,
            duration_ms=self._elapsed_ms(started),
            timed_out=True,
        )
        raise AgentTimeoutError(f"Agent timed out after {timeout:g}s", result)

    async def _communicate(
        self,
        proc: asyncio.subprocess.Process,
        prompt: str,
        emit: OutputCallback,
    ) -> int:
        await asyncio.gather(
            self._feed(proc.stdin, prompt),
            self._pump(proc.stdout, "stdout", emit),
            self._pump(proc.stderr, "stderr", emit),
        )
        return await proc.wait()

    @staticmethod
    async def _feed(stdin: Optional[asyncio.StreamWriter], prompt: str) -> None:
        if stdin is None:
            return
        try:
            stdin.write(prompt.encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Agent closed stdin before reading the whole prompt")
        finally:
            stdin.close()
            try:
                await stdin.wait_closed()
            except (BrokenPipeError, ConnectionResetError):
                pass

    @staticmethod
    async def _pump(
        stream: Optional[asyncio.StreamReader],
        channel: str,
        emit: OutputCallback,
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                tail = decoder.decode(b"", final=True)
                if tail:
                    emit(tail, channel)
                return
            text = decoder.decode(chunk)
            if text:
                emit(text, channel)

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM the agent (and its process group), SIGKILL after the grace period."""
        if proc.returncode is not None:
            return
        self._signal(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.kill_grace)
        except asyncio.TimeoutError:
            logger.warning(f"Agent pid {proc.pid} ignored SIGTERM, killing")
            self._signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
            await proc.wait()

    @staticmethod
    def _signal(proc: asyncio.subprocess.Process, sig: int) -> None:
        try:
            if os.name == "posix":
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except ProcessLookupError:
            pass

    async def _drain(self, task: asyncio.Future) -> None:
        """Give the reader task a bounded chance to collect trailing output."""
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self.kill_grace)
        except asyncio.TimeoutError:
            task.cancel()
        except asyncio.CancelledError:
            task.cancel()
            raise
        except Exception as e:
            logger.debug(f"Agent reader ended with error after termination: {e}")

    def _elapsed_ms(self, started: float) -> int:
        return int((self._clock() - started) * 1000)


class MockAgentRunner(AgentRunner):
    """Agent runner that never spawns a process.

    ``script`` is called with (prompt, selector, attempt_number) and may
    mutate files on disk the way a real agent would. It returns an
    ExecutionResult, or raises an ExecutionError to simulate a failure.
    """

    def __init__(
        self,
        script: Optional[Callable[[str, str, int], Any]] = None,
        available: bool = True,
        output: str = "Mock agent run complete.\n",
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.script = script
        self.available = available
        self.output = output
        self.call_count = 0
        self.prompts: List[str] = []

    def is_available(self, selector: str) -> bool:
        return self.available and selector in self.agents

    async def invoke(
        self,
        prompt: str,
        selector: str,
        cwd: Optional[Path] = None,
        timeout: Optional[float] = 600.0,
        on_output: Optional[OutputCallback] = None,
    ) -> ExecutionResult:
        self.resolve(selector)
        self.call_count += 1
        self.prompts.append(prompt)
        if self.script is not None:
            result = self.script(prompt, selector, self.call_count)
            if inspect.isawaitable(result):
                result = await result
        else:
            result = ExecutionResult(succeeded=True, output=self.output, exit_code=0)
        if on_output is not None and result.output:
            on_output(result.output, "stdout")
        return result
