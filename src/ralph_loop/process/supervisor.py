"""Agent subprocess lifecycle: spawn, concurrent output draining, termination."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ralph_loop.errors import ProcessCancelled, ProcessTimeout, SpawnFailure
from ralph_loop.process.cancellation import CancellationToken

logger = logging.getLogger(__name__)

# stream-json lines carry the whole rewritten document, so the default 64 KiB
# reader limit is far too small.
STREAM_LINE_LIMIT = 16 * 1024 * 1024
DEFAULT_GRACE_PERIOD_SECONDS = 5.0
SKIP_PERMISSIONS_FLAG = "--dangerously-skip-permissions"


class OutputStream(str, Enum):
    """Child output pipe a line was read from."""

    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass(frozen=True, slots=True)
class OutputLine:
    """One line of child output with the trailing newline stripped."""

    stream: OutputStream
    text: str


@dataclass(frozen=True, slots=True)
class ExitStatus:
    """Reaped child exit status."""

    returncode: int

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def signal_number(self) -> int | None:
        if self.returncode < 0:
            return -self.returncode
        return None


def build_agent_args(
    base_args: Sequence[str],
    additional_args: Sequence[str],
    *,
    skip_permissions: bool,
) -> list[str]:
    """Combine argv in order: base args, permission flag (if enabled), call args."""

    args = list(base_args)
    if skip_permissions:
        args.append(SKIP_PERMISSIONS_FLAG)
    args.extend(additional_args)
    return args


class ProcessHandle:
    """Owns one live agent subprocess running in its own process group.

    Both pipes are drained by background pump tasks into a single queue as soon
    as the child starts, so a child that floods stderr can never block on a
    full pipe while the consumer waits for stdout.
    """

    def __init__(self, process: asyncio.subprocess.Process, *, command: str) -> None:
        self._process = process
        self.command = command
        self._queue: asyncio.Queue[OutputLine | OutputStream] = asyncio.Queue()
        self._open_streams = 2
        self._pumps = [
            asyncio.create_task(self._pump(process.stdout, OutputStream.STDOUT)),
            asyncio.create_task(self._pump(process.stderr, OutputStream.STDERR)),
        ]

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    async def next_output(self) -> OutputLine | None:
        """Return the next line from either stream, or ``None`` after both hit EOF."""

        while self._open_streams:
            item = await self._queue.get()
            if isinstance(item, OutputStream):
                self._open_streams -= 1
                continue
            return item
        return None

    async def wait(self) -> ExitStatus:
        """Wait for the child to exit on its own and reap it."""

        returncode = await self._process.wait()
        return ExitStatus(returncode=returncode)

    async def terminate(
        self,
        grace_period: float = DEFAULT_GRACE_PERIOD_SECONDS,
    ) -> ExitStatus:
        """SIGTERM the process group, escalate to SIGKILL after ``grace_period``."""

        if self._process.returncode is None:
            self._signal_group(signal.SIGTERM)
            try:
                await asyncio.wait_for(self._process.wait(), timeout=max(0.0, grace_period))
            except TimeoutError:
                logger.warning(
                    "Agent pid=%s ignored SIGTERM for %.1fs, sending SIGKILL",
                    self.pid,
                    grace_period,
                )
        return await self._force_reap()

    async def kill(self) -> ExitStatus:
        """SIGKILL the process group immediately and reap."""

        return await self._force_reap()

    async def __aenter__(self) -> ProcessHandle:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self._process.returncode is None:
            await self.terminate()
        else:
            await self._stop_pumps()

    async def _force_reap(self) -> ExitStatus:
        # Stragglers left in the group would keep the pipes open.
        self._signal_group(signal.SIGKILL)
        returncode = await self._process.wait()
        await self._stop_pumps()
        return ExitStatus(returncode=returncode)

    def _signal_group(self, signum: signal.Signals) -> None:
        with contextlib.suppress(ProcessLookupError):
            os.killpg(self._process.pid, signum)

    async def _stop_pumps(self) -> None:
        for pump in self._pumps:
            pump.cancel()
        await asyncio.gather(*self._pumps, return_exceptions=True)

    async def _pump(self, reader: asyncio.StreamReader | None, stream: OutputStream) -> None:
        try:
            if reader is None:
                return
            while True:
                try:
                    raw = await reader.readline()
                except ValueError:
                    logger.warning(
                        "Dropping oversized %s line from agent pid=%s",
                        stream.value,
                        self.pid,
                    )
                    continue
                if not raw:
                    return
                text = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                self._queue.put_nowait(OutputLine(stream=stream, text=text))
        finally:
            self._queue.put_nowait(stream)


async def spawn(
    command: str,
    args: Sequence[str],
    working_dir: Path,
    *,
    env: Mapping[str, str] | None = None,
) -> ProcessHandle:
    """Start ``command`` with piped output, null stdin and its own process group."""

    if not working_dir.is_dir():
        raise SpawnFailure(f"Working directory does not exist: {working_dir}", transient=False)
    try:
        process = await asyncio.create_subprocess_exec(
            command,
            *args,
            cwd=str(working_dir),
            env=dict(env) if env is not None else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
            limit=STREAM_LINE_LIMIT,
        )
    except FileNotFoundError as error:
        raise SpawnFailure(f"Agent command not found: {command}", transient=False) from error
    except PermissionError as error:
        raise SpawnFailure(
            f"Agent command is not executable: {command}",
            transient=False,
        ) from error
    except OSError as error:
        raise SpawnFailure(f"Agent command failed to start: {error}", transient=True) from error

    logger.debug("Spawned %s pid=%s cwd=%s", command, process.pid, working_dir)
    return ProcessHandle(process, command=command)


async def run_streaming(
    handle: ProcessHandle,
    on_line: Callable[[OutputLine], None],
    *,
    cancel: CancellationToken,
    timeout_seconds: float,
    grace_period: float = DEFAULT_GRACE_PERIOD_SECONDS,
) -> ExitStatus:
    """Feed every output line to ``on_line`` until the child exits.

    Raises ``ProcessTimeout`` when the deadline passes and ``ProcessCancelled``
    when ``cancel`` fires; in both cases the child is terminated and reaped
    before the exception leaves this function.
    """

    cancel_waiter = asyncio.ensure_future(cancel.wait())
    line_task: asyncio.Future[OutputLine | None] | None = None
    try:
        async with asyncio.timeout(timeout_seconds):
            while True:
                line_task = asyncio.ensure_future(handle.next_output())
                done, _ = await asyncio.wait(
                    {line_task, cancel_waiter},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if cancel_waiter in done:
                    break
                line = line_task.result()
                line_task = None
                if line is None:
                    return await handle.wait()
                on_line(line)
    except TimeoutError:
        await handle.terminate(grace_period)
        raise ProcessTimeout(timeout_seconds) from None
    finally:
        cancel_waiter.cancel()
        if line_task is not None:
            line_task.cancel()

    logger.info("Cancellation requested, terminating agent pid=%s", handle.pid)
    await handle.terminate(grace_period)
    raise ProcessCancelled()
