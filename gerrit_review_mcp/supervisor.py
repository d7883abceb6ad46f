"""
Runs the external review agent as a child process.

The agent gets its prompt on stdin and reports progress as ``stream-json``
records on stdout. A run ends exactly once: normal exit, failure, timeout
or cancellation. Timeout and cancellation are soft stops that resolve with
a RunOutcome instead of raising, because comments already posted through
the tool server stay valid.
"""
import asyncio
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, List, Mapping, Optional, Sequence, Union

from .config import DEFAULT_AGENT_BINARY, DEFAULT_AGENT_TIMEOUT, AgentSettings, logger
from .stream import LineDecoder, StatusTracker, classify

AGENT_FLAGS = (
    "agent",
    "--print",
    "--output-format", "stream-json",
    "--stream-partial-output",
    "--approve-mcps",
    "--trust",
    "--force",
)
SEPARATOR = "─" * 60
READ_CHUNK_SIZE = 4096
# How long stdout/stderr may lag behind process exit before they are abandoned
DRAIN_GRACE = 2.0
REAP_TIMEOUT = 5.0

ProgressSink = Callable[[str], None]
OutputSink = Callable[[str], None]


class AgentError(Exception):
    """The agent could not be started or exited unsuccessfully"""

    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.exit_code = exit_code


class RunOutcome(str, Enum):
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class CancellationToken:
    """One-way flag a caller sets to stop a run early."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class AgentRun:
    process: asyncio.subprocess.Process
    future: asyncio.Future
    started_at: float
    deadline: float
    decoder: LineDecoder = field(default_factory=LineDecoder)
    status: StatusTracker = field(default_factory=StatusTracker)
    settled: bool = False


def _format_duration(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        minutes = int(seconds // 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    return f"{seconds:g}s"


def _default_progress(status: str) -> None:
    logger.info(f"📊 {status}")


def _default_output(text: str) -> None:
    if text.strip():
        logger.debug(f"🤖 {text.rstrip()}")


class AgentSupervisor:
    def __init__(
        self,
        command: Optional[Sequence[str]] = None,
        timeout: float = DEFAULT_AGENT_TIMEOUT,
        cwd: Optional[Union[str, Path]] = None,
        env: Optional[Mapping[str, str]] = None,
        on_progress: Optional[ProgressSink] = None,
        on_output: Optional[OutputSink] = None,
    ):
        self.command: List[str] = list(command) if command else [DEFAULT_AGENT_BINARY, *AGENT_FLAGS]
        self.timeout = timeout
        self.cwd = cwd
        self.env = dict(env) if env is not None else None
        self.on_progress = on_progress or _default_progress
        self.on_output = on_output or _default_output

    @classmethod
    def from_settings(cls, settings: AgentSettings, **kwargs) -> "AgentSupervisor":
        return cls(command=[settings.binary, *AGENT_FLAGS], timeout=settings.timeout, **kwargs)

    def build_command(self, model: Optional[str] = None) -> List[str]:
        command = list(self.command)
        if model:
            command += ["--model", model]
        return command

    async def run(
        self,
        prompt: str,
        model: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
        artifacts: Iterable[Union[str, Path]] = (),
    ) -> RunOutcome:
        """Run the agent to completion.

        Returns the outcome for normal exit, timeout and cancellation. Raises
        AgentError when the binary cannot be spawned or exits non-zero.
        ``artifacts`` are deleted once the run is over, whatever the outcome.
        """
        try:
            return await self._run(prompt, model, cancel_token)
        finally:
            self._cleanup_artifacts(artifacts)

    async def _run(self, prompt: str, model: Optional[str], cancel_token: Optional[CancellationToken]) -> RunOutcome:
        if cancel_token is not None and cancel_token.is_cancelled:
            logger.info("🛑 Run cancelled before the agent was started")
            return RunOutcome.CANCELLED

        command = self.build_command(model)
        logger.info(f"🚀 Invoking agent: {' '.join(command)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=self.env,
            )
        except OSError as e:
            self._emit_output(f"\n{SEPARATOR}\n[ERROR] {e}\n")
            raise AgentError(
                f"Agent CLI failed to start: {e}. "
                f'Check that "{command[0]}" command is installed and available.'
            ) from e

        loop = asyncio.get_running_loop()
        now = loop.time()
        run = AgentRun(process=process, future=loop.create_future(), started_at=now, deadline=now + self.timeout)
        self._emit_output(f"PID: {process.pid}\n\n")

        stdout_task = asyncio.create_task(self._pump_stdout(run))
        stderr_task = asyncio.create_task(self._pump_stderr(run))
        tasks = [
            stdout_task,
            stderr_task,
            asyncio.create_task(self._feed_prompt(process, prompt)),
            asyncio.create_task(self._watch_exit(run, stdout_task, stderr_task)),
        ]
        if cancel_token is not None:
            tasks.append(asyncio.create_task(self._watch_cancel(run, cancel_token)))
        timer = loop.call_at(run.deadline, self._on_timeout, run)

        try:
            return await run.future
        finally:
            timer.cancel()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self._reap(process)

    async def _feed_prompt(self, process: asyncio.subprocess.Process, prompt: str) -> None:
        stdin = process.stdin
        if stdin is None:
            return
        try:
            stdin.write(prompt.encode("utf-8"))
            await stdin.drain()
            stdin.close()
            await stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning(f"⚠️ Agent closed stdin before the prompt was written: {e}")

    async def _pump_stdout(self, run: AgentRun) -> None:
        stream = run.process.stdout
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            for line in run.decoder.feed(chunk):
                self._handle_line(run, line)

    async def _pump_stderr(self, run: AgentRun) -> None:
        decoder = LineDecoder()
        stream = run.process.stderr
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            for line in decoder.feed(chunk):
                if line.strip():
                    self._emit_output(f"[stderr] {line.rstrip()}\n")
        rest = decoder.flush()
        if rest and rest.strip():
            self._emit_output(f"[stderr] {rest.rstrip()}\n")

    async def _watch_exit(self, run: AgentRun, stdout_task: asyncio.Task, stderr_task: asyncio.Task) -> None:
        try:
            await self._finish(run, stdout_task, stderr_task)
        except Exception as e:
            logger.error(f"💥 Agent supervision failed: {e}")
            self._settle(run, error=AgentError(f"Agent supervision failed: {e}"))

    async def _finish(self, run: AgentRun, stdout_task: asyncio.Task, stderr_task: asyncio.Task) -> None:
        code = await run.process.wait()
        await asyncio.wait([stdout_task, stderr_task], timeout=DRAIN_GRACE)

        rest = run.decoder.flush()
        if rest:
            self._handle_line(run, rest)
        if run.settled:
            return

        elapsed = round(asyncio.get_running_loop().time() - run.started_at)
        self._emit_output(f"\n{SEPARATOR}\n[Completed in {elapsed}s]\n")

        # A negative code means the agent was killed by a signal
        if code <= 0:
            logger.info(f"✅ Agent completed (exit code {code})")
            self._settle(run, RunOutcome.COMPLETED)
        else:
            logger.error(f"❌ Agent exited with code {code}")
            self._settle(run, error=AgentError(f"Agent exited with code {code}", exit_code=code))

    async def _watch_cancel(self, run: AgentRun, token: CancellationToken) -> None:
        await token.wait()
        if run.settled:
            return
        logger.info("🛑 Run cancelled, stopping agent")
        self._emit_output(f"\n{SEPARATOR}\n[Cancelled]\n")
        self._kill(run.process)
        self._settle(run, RunOutcome.CANCELLED)

    def _on_timeout(self, run: AgentRun) -> None:
        if run.settled:
            return
        logger.warning(f"⏰ Agent timed out after {_format_duration(self.timeout)}")
        self._emit_output(f"\n{SEPARATOR}\n[Timed out after {_format_duration(self.timeout)}]\n")
        self._kill(run.process)
        self._settle(run, RunOutcome.TIMED_OUT)

    def _handle_line(self, run: AgentRun, line: str) -> None:
        if run.settled:
            return
        line = line.strip()
        if not line:
            return
        try:
            result = classify(line)
        except Exception as e:
            logger.error(f"💥 Could not classify agent output: {e}")
            self._emit_output(line + "\n")
            return
        for fragment in result.output:
            self._emit_output(fragment)
        if run.status.update(result.progress):
            self._emit_progress(result.progress)

    def _settle(self, run: AgentRun, outcome: Optional[RunOutcome] = None, error: Optional[BaseException] = None) -> None:
        if run.settled:
            return
        run.settled = True
        if error is not None:
            run.future.set_exception(error)
        else:
            run.future.set_result(outcome)

    @staticmethod
    def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            pass

    async def _reap(self, process: asyncio.subprocess.Process) -> None:
        self._kill(process)
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        try:
            await asyncio.wait_for(process.wait(), REAP_TIMEOUT)
        except asyncio.TimeoutError:
            logger.error(f"❌ Agent process {process.pid} did not exit after kill")

    def _emit_output(self, text: str) -> None:
        try:
            self.on_output(text)
        except Exception as e:
            logger.error(f"❌ Output sink failed: {e}")

    def _emit_progress(self, status: str) -> None:
        try:
            self.on_progress(status)
        except Exception as e:
            logger.error(f"❌ Progress sink failed: {e}")

    @staticmethod
    def _cleanup_artifacts(artifacts: Iterable[Union[str, Path]]) -> None:
        for artifact in artifacts:
            try:
                os.unlink(artifact)
                logger.info(f"🗑️ Cleaned up: {os.path.basename(artifact)}")
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"⚠️ Could not clean up {artifact}: {e}")
