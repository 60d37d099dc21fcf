from __future__ import annotations

import asyncio
import os
import sys
import time
from pathlib import Path

import allure
import pytest

from ralph_loop.errors import ProcessCancelled, ProcessTimeout, SpawnFailure
from ralph_loop.process import (
    CancellationToken,
    OutputLine,
    OutputStream,
    build_agent_args,
    run_streaming,
    spawn,
)

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Subprocess Supervision"),
]

_IGNORE_SIGTERM = (
    "import signal, sys, time\n"
    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    "print('ready', flush=True)\n"
    "time.sleep(60)\n"
)


def _assert_reaped(pid: int) -> None:
    # The supervisor waited on the child, so its pid no longer exists.
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


async def _collect(
    script: str,
    tmp_path: Path,
    *,
    timeout_seconds: float = 30.0,
    grace_period: float = 1.0,
    cancel: CancellationToken | None = None,
) -> tuple[list[OutputLine], int]:
    lines: list[OutputLine] = []
    handle = await spawn(sys.executable, ["-c", script], tmp_path)
    async with handle:
        status = await run_streaming(
            handle,
            lines.append,
            cancel=cancel or CancellationToken(),
            timeout_seconds=timeout_seconds,
            grace_period=grace_period,
        )
    return lines, status.returncode


def test_build_agent_args_orders_base_flag_then_call_args() -> None:
    args = build_agent_args(["--model", "m"], ["-p", "prompt"], skip_permissions=True)

    assert args == ["--model", "m", "--dangerously-skip-permissions", "-p", "prompt"]
    assert build_agent_args([], ["-p"], skip_permissions=False) == ["-p"]


def test_stderr_flood_does_not_block_stdout(tmp_path: Path) -> None:
    script = (
        "import sys\n"
        "for _ in range(4000):\n"
        "    sys.stderr.write('e' * 512 + '\\n')\n"
        "sys.stderr.flush()\n"
        "print('stdout after flood', flush=True)\n"
    )

    lines, returncode = asyncio.run(_collect(script, tmp_path, timeout_seconds=20.0))

    assert returncode == 0
    stdout = [line.text for line in lines if line.stream is OutputStream.STDOUT]
    stderr = [line for line in lines if line.stream is OutputStream.STDERR]
    assert stdout == ["stdout after flood"]
    assert len(stderr) == 4000


def test_long_stdout_line_is_delivered_whole(tmp_path: Path) -> None:
    script = "print('x' * 300_000, flush=True)\n"

    lines, returncode = asyncio.run(_collect(script, tmp_path))

    assert returncode == 0
    assert [len(line.text) for line in lines] == [300_000]


def test_timeout_escalates_to_sigkill_and_reaps(tmp_path: Path) -> None:
    async def scenario() -> tuple[int, int | None, float]:
        handle = await spawn(sys.executable, ["-c", _IGNORE_SIGTERM], tmp_path)
        started = time.monotonic()
        with pytest.raises(ProcessTimeout):
            await run_streaming(
                handle,
                lambda _line: None,
                cancel=CancellationToken(),
                timeout_seconds=1.0,
                grace_period=0.5,
            )
        return handle.pid, handle.returncode, time.monotonic() - started

    pid, returncode, elapsed = asyncio.run(scenario())

    assert returncode == -9
    assert elapsed < 10
    _assert_reaped(pid)


def test_timeout_terminates_cooperative_child_with_sigterm(tmp_path: Path) -> None:
    async def scenario() -> int | None:
        handle = await spawn(sys.executable, ["-c", "import time; time.sleep(60)"], tmp_path)
        with pytest.raises(ProcessTimeout):
            await run_streaming(
                handle,
                lambda _line: None,
                cancel=CancellationToken(),
                timeout_seconds=0.5,
                grace_period=5.0,
            )
        return handle.returncode

    assert asyncio.run(scenario()) == -15


def _process_gone(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    # Orphans are reaped by init; a zombie no longer runs.
    stat = Path(f"/proc/{pid}/stat")
    try:
        return stat.read_text("utf-8").rsplit(")", 1)[1].split()[0] == "Z"
    except FileNotFoundError:
        return True


def test_timeout_terminates_the_whole_process_group(tmp_path: Path) -> None:
    pid_file = tmp_path / "grandchild.pid"
    script = (
        "import subprocess, sys, time\n"
        "child = subprocess.Popen(\n"
        "    [sys.executable, '-c', 'import time; time.sleep(60)'],\n"
        "    stdout=subprocess.DEVNULL,\n"
        "    stderr=subprocess.DEVNULL,\n"
        ")\n"
        f"open({str(pid_file)!r}, 'w').write(str(child.pid))\n"
        "print('spawned', flush=True)\n"
        "time.sleep(60)\n"
    )

    async def scenario() -> None:
        handle = await spawn(sys.executable, ["-c", script], tmp_path)
        with pytest.raises(ProcessTimeout):
            await run_streaming(
                handle,
                lambda _line: None,
                cancel=CancellationToken(),
                timeout_seconds=2.0,
                grace_period=1.0,
            )

    asyncio.run(scenario())

    grandchild = int(pid_file.read_text("utf-8"))
    deadline = time.monotonic() + 5
    while not _process_gone(grandchild) and time.monotonic() < deadline:
        time.sleep(0.1)
    assert _process_gone(grandchild)


def test_cancellation_terminates_child(tmp_path: Path) -> None:
    async def scenario() -> int:
        cancel = CancellationToken()
        handle = await spawn(sys.executable, ["-c", _IGNORE_SIGTERM], tmp_path)
        asyncio.get_running_loop().call_later(0.5, cancel.cancel)
        with pytest.raises(ProcessCancelled):
            await run_streaming(
                handle,
                lambda _line: None,
                cancel=cancel,
                timeout_seconds=30.0,
                grace_period=0.5,
            )
        assert handle.returncode is not None
        return handle.pid

    _assert_reaped(asyncio.run(scenario()))


def test_context_manager_terminates_running_child(tmp_path: Path) -> None:
    async def scenario() -> tuple[int, int | None]:
        handle = await spawn(sys.executable, ["-c", "import time; time.sleep(60)"], tmp_path)
        async with handle:
            pass
        return handle.pid, handle.returncode

    pid, returncode = asyncio.run(scenario())

    assert returncode is not None
    _assert_reaped(pid)


def test_missing_command_is_a_permanent_spawn_failure(tmp_path: Path) -> None:
    with pytest.raises(SpawnFailure) as raised:
        asyncio.run(spawn(str(tmp_path / "no-such-agent"), [], tmp_path))

    assert raised.value.transient is False


def test_missing_working_dir_is_a_permanent_spawn_failure(tmp_path: Path) -> None:
    with pytest.raises(SpawnFailure, match="Working directory") as raised:
        asyncio.run(spawn(sys.executable, ["-c", "pass"], tmp_path / "missing"))

    assert raised.value.transient is False


def test_non_zero_exit_status_is_reported(tmp_path: Path) -> None:
    lines, returncode = asyncio.run(
        _collect("import sys; print('bye'); sys.exit(3)", tmp_path),
    )

    assert returncode == 3
    assert [line.text for line in lines] == ["bye"]
