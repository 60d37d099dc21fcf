"""Agent subprocess supervision and output decoding."""

from ralph_loop.process.cancellation import CancellationToken, install_signal_handlers
from ralph_loop.process.supervisor import (
    ExitStatus,
    OutputLine,
    OutputStream,
    ProcessHandle,
    build_agent_args,
    run_streaming,
    spawn,
)

__all__ = [
    "CancellationToken",
    "ExitStatus",
    "OutputLine",
    "OutputStream",
    "ProcessHandle",
    "build_agent_args",
    "install_signal_handlers",
    "run_streaming",
    "spawn",
]
