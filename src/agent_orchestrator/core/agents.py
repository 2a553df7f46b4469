"""Agent process launching, output capture, input and termination."""

import asyncio
import codecs
import logging
import os
import signal
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

READ_CHUNK = 4096

OnOutput = Callable[[str, str], object]


@dataclass
class ExitStatus:
    code: int | None
    signal: str | None

    @property
    def succeeded(self) -> bool:
        return self.code == 0


def exit_status(returncode: int) -> ExitStatus:
    """Split an asyncio returncode into exit code and signal name."""
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = str(-returncode)
        return ExitStatus(code=None, signal=name)
    return ExitStatus(code=returncode, signal=None)


async def launch_agent(
    command: str,
    cwd: str | Path,
    env: dict[str, str] | None = None,
) -> asyncio.subprocess.Process:
    """Spawn ``command`` through a login shell in its own process group."""
    proc = await asyncio.create_subprocess_exec(
        "bash",
        "-lc",
        command,
        cwd=str(cwd),
        env=env if env is not None else {**os.environ},
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
    )
    logger.info("Launched agent PID %s in %s", proc.pid, cwd)
    return proc


def send_input(proc: asyncio.subprocess.Process, text: str) -> bool:
    """Write one line to the process stdin. Best-effort; returns whether it was written."""
    if proc.returncode is not None or proc.stdin is None or proc.stdin.is_closing():
        return False
    line = text if text.endswith("\n") else text + "\n"
    try:
        proc.stdin.write(line.encode("utf-8"))
    except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
        logger.debug("stdin write to PID %s failed: %s", proc.pid, e)
        return False
    return True


def cancel_agent(proc: asyncio.subprocess.Process, sig: int = signal.SIGTERM) -> bool:
    """Send ``sig`` to the agent's process group. Does not wait or escalate."""
    if proc.returncode is not None:
        return False
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        return False  # Already exited
    except PermissionError:
        proc.send_signal(sig)
    return True


async def _pump(stream: asyncio.StreamReader | None, name: str, on_output: OnOutput):
    if stream is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await stream.read(READ_CHUNK)
        if not chunk:
            break
        text = decoder.decode(chunk)
        if text:
            on_output(name, text)
    tail = decoder.decode(b"", final=True)
    if tail:
        on_output(name, tail)


async def supervise_agent(proc: asyncio.subprocess.Process, on_output: OnOutput) -> ExitStatus:
    """Forward stdout/stderr chunks to ``on_output(stream, text)`` until the process exits."""
    await asyncio.gather(
        _pump(proc.stdout, "stdout", on_output),
        _pump(proc.stderr, "stderr", on_output),
    )
    returncode = await proc.wait()
    if proc.stdin is not None and not proc.stdin.is_closing():
        proc.stdin.close()
    status = exit_status(returncode)
    logger.info("Agent PID %s exited (code=%s, signal=%s)", proc.pid, status.code, status.signal)
    return status
