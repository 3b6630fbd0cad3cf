"""Runs external commands such as kubectl as asyncio subprocesses.

At most a fixed number of commands run at once across all releases so a
large sync does not fork an unbounded number of kubectl processes.
"""

import asyncio
from dataclasses import dataclass
import logging
import os
import shlex
import subprocess

from .exceptions import CommandException

__all__ = [
    "Command",
    "run",
]

_LOGGER = logging.getLogger(__name__)

MAX_CONCURRENT_COMMANDS = 10
DEFAULT_TIMEOUT = 60.0

_SEM = asyncio.Semaphore(MAX_CONCURRENT_COMMANDS)


@dataclass
class Command:
    """A command line with the environment and time limit to run it with."""

    cmd: list[str]
    env: dict[str, str] | None = None
    """Variables added to the environment of the current process."""

    timeout: float = DEFAULT_TIMEOUT

    @property
    def string(self) -> str:
        """Return the command line quoted as it would be typed in a shell."""
        return shlex.join(self.cmd)

    def __str__(self) -> str:
        return self.string

    def _failure(self, returncode: int, out: bytes, err: bytes) -> CommandException:
        lines = [f"Command '{self}' failed with return code {returncode}"]
        lines.extend(
            stream.decode("utf-8", errors="replace") for stream in (out, err) if stream
        )
        message = "\n".join(lines)
        _LOGGER.debug(message)
        return CommandException(message)

    async def run(self, stdin: bytes | None = None) -> bytes:
        """Run the command to completion and return its stdout.

        The process is killed if the command times out or the caller is
        cancelled.
        """
        _LOGGER.debug("Running command: %s", self)
        proc = await asyncio.create_subprocess_exec(
            *self.cmd,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env={**os.environ, **(self.env or {})},
        )
        try:
            async with asyncio.timeout(self.timeout):
                out, err = await proc.communicate(stdin)
        except TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise CommandException(
                f"Command '{self}' timed out after {self.timeout}s"
            ) from exc
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            raise
        if proc.returncode:
            raise self._failure(proc.returncode, out, err)
        return out


async def run(cmd: Command, stdin: str | None = None) -> str:
    """Run a command, waiting for a free slot, and return stdout as text."""
    async with _SEM:
        out = await cmd.run(None if stdin is None else stdin.encode("utf-8"))
    return out.decode("utf-8")
