"""
Runs the external analysis tool as a child process.

This is the only place that talks to the outside process world. Whatever
happens there (missing executable, hangs, floods of output, crashes) comes
back as a plain ToolResult; run_tool() never raises for process-level
failures and callers branch on exit_code instead of catching exceptions.
"""

import asyncio
import signal
from dataclasses import dataclass

from bpmkey.core.logger import get_logger

logger = get_logger(__name__)


DEFAULT_TIMEOUT = 60.0
DEFAULT_MAX_STDOUT_BYTES = 8 * 1024 * 1024
DEFAULT_MAX_STDERR_BYTES = 512 * 1024

READ_CHUNK_SIZE = 64 * 1024
# Grace period for pipes to close after the child was killed
KILL_GRACE_SECONDS = 5.0


@dataclass(frozen=True)
class ToolResult:
    """
    Outcome of one external tool invocation.

    Attributes:
        exit_code: Process exit code, or None if the process could not be
                   started, timed out or was killed by a signal.
        signal: Name of the terminating signal (e.g. 'SIGKILL'), or None.
        stdout: Captured stdout, truncated to the configured cap.
        stderr: Captured stderr, truncated to the configured cap. Holds the
                error message when the process could not be started.
        timed_out: True if the wall-clock timeout fired.
    """
    exit_code: int | None
    signal: str | None
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


def _kill(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        pass


async def _drain(
    stream: asyncio.StreamReader,
    buffer: bytearray,
    limit: int,
    process: asyncio.subprocess.Process | None = None
) -> None:
    """
    Read `stream` to EOF, keeping at most `limit` bytes in `buffer`.

    When `process` is given it is killed as soon as the cap is reached,
    since nothing more from this stream will be kept.
    """
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            return
        room = limit - len(buffer)
        if room <= 0:
            continue
        buffer.extend(chunk[:room])
        if process is not None and len(buffer) >= limit:
            _kill(process)


def _decode(data: bytearray) -> str:
    return bytes(data).decode("utf-8", errors="replace")


async def run_tool(
    executable: str,
    args: list[str],
    *,
    timeout: float = DEFAULT_TIMEOUT,
    max_stdout_bytes: int = DEFAULT_MAX_STDOUT_BYTES,
    max_stderr_bytes: int = DEFAULT_MAX_STDERR_BYTES
) -> ToolResult:
    """
    Run `executable` with `args`, capturing output under a timeout.

    Args:
        executable: Program name (looked up on PATH) or path.
        args: Command-line arguments.
        timeout: Wall-clock limit in seconds; the process is SIGKILLed when
                 it is exceeded.
        max_stdout_bytes: Cap on captured stdout. Reaching it kills the
                          process early.
        max_stderr_bytes: Cap on captured stderr. Excess is discarded.

    Returns:
        ToolResult describing the run. Never raises for spawn or process
        failures.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            executable,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        logger.debug(f"Failed to start {executable}: {e}")
        return ToolResult(exit_code=None, signal=None, stdout="", stderr=str(e))

    stdout = bytearray()
    stderr = bytearray()
    readers = asyncio.gather(
        _drain(process.stdout, stdout, max_stdout_bytes, process),
        _drain(process.stderr, stderr, max_stderr_bytes),
    )

    timed_out = False
    try:
        await asyncio.wait_for(asyncio.shield(readers), timeout)
    except asyncio.TimeoutError:
        timed_out = True
        logger.debug(f"{executable} {' '.join(args[:1])} timed out after {timeout}s, killing")
        _kill(process)

    try:
        await asyncio.wait_for(asyncio.shield(readers), KILL_GRACE_SECONDS)
    except asyncio.TimeoutError:
        # A grandchild still holds the pipes open; keep what we have
        readers.cancel()

    try:
        returncode = await asyncio.wait_for(process.wait(), KILL_GRACE_SECONDS)
    except asyncio.TimeoutError:
        _kill(process)
        returncode = await process.wait()

    exit_code: int | None = returncode
    signal_name: str | None = None
    if returncode is not None and returncode < 0:
        exit_code = None
        try:
            signal_name = signal.Signals(-returncode).name
        except ValueError:
            signal_name = str(-returncode)
    if timed_out:
        exit_code = None

    return ToolResult(
        exit_code=exit_code,
        signal=signal_name,
        stdout=_decode(stdout),
        stderr=_decode(stderr),
        timed_out=timed_out,
    )
