# executor.py
# External process execution with timeout and output-size bounds.
#
# The only blocking call in the core. A dispatched command cannot be
# cancelled; it ends on exit, timeout or output overflow, whichever is first.

import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import IO

from entran.errors import CommandFailedError, CommandTimeoutError, OutputOverflowError

_CHUNK = 8192


@dataclass(frozen=True)
class CommandOutput:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def combined(self) -> str:
        """Stripped stdout and stderr, newline-joined, empty parts omitted."""
        parts = [part.strip() for part in (self.stdout, self.stderr)]
        return "\n".join(part for part in parts if part)


def _decode(data: bytes) -> str:
    return bytes(data).decode("utf-8", errors="replace")


def _kill(proc: subprocess.Popen) -> None:
    """Kill the shell and, on POSIX, everything it spawned."""
    if os.name == "posix":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        return
    if proc.poll() is None:
        proc.kill()


class _BoundedReader(threading.Thread):
    """Drains one pipe into memory; kills the process once `limit` is passed."""

    def __init__(self, stream: IO[bytes], limit: int, proc: subprocess.Popen) -> None:
        super().__init__(daemon=True)
        self._stream = stream
        self._limit = limit
        self._proc = proc
        self.data = bytearray()
        self.overflowed = False

    def run(self) -> None:
        with self._stream:
            while True:
                chunk = self._stream.read1(_CHUNK)
                if not chunk:
                    return
                self.data.extend(chunk)
                if len(self.data) > self._limit:
                    self.overflowed = True
                    _kill(self._proc)
                    return


class CommandExecutor:
    """
    Runs shell commands for the Step Evaluator.

    Instantiate once and share; the executor holds no per-call state.

    Example:
        executor = CommandExecutor()
        result = executor.run("ip addr show", timeout_ms=5000, max_output_bytes=65536)
        print(result.combined)
    """

    def __init__(self, shell: str | None = None) -> None:
        self._shell = shell

    def run(self, command: str, timeout_ms: int, max_output_bytes: int) -> CommandOutput:
        """
        Execute `command` through the shell and block until it finishes.

        Raises CommandTimeoutError, OutputOverflowError or CommandFailedError.
        """
        try:
            proc = subprocess.Popen(
                command,
                shell=True,
                executable=self._shell,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=(os.name == "posix"),
            )
        except OSError as exc:
            raise CommandFailedError(command, None, stderr=str(exc)) from exc

        readers = [
            _BoundedReader(proc.stdout, max_output_bytes, proc),
            _BoundedReader(proc.stderr, max_output_bytes, proc),
        ]
        for reader in readers:
            reader.start()

        deadline = time.monotonic() + timeout_ms / 1000
        try:
            proc.wait(timeout=timeout_ms / 1000)
        except subprocess.TimeoutExpired as exc:
            _kill(proc)
            proc.wait()
            for reader in readers:
                reader.join()
            raise CommandTimeoutError(command, timeout_ms) from exc

        # Background children may still hold the pipes open.
        for reader in readers:
            reader.join(max(0.0, deadline - time.monotonic()))
        if any(reader.is_alive() for reader in readers):
            _kill(proc)
            for reader in readers:
                reader.join()
            raise CommandTimeoutError(command, timeout_ms)

        if any(reader.overflowed for reader in readers):
            raise OutputOverflowError(command, max_output_bytes)

        out_reader, err_reader = readers
        result = CommandOutput(
            stdout=_decode(out_reader.data),
            stderr=_decode(err_reader.data),
            exit_code=proc.returncode,
        )
        if proc.returncode != 0:
            raise CommandFailedError(command, proc.returncode, result.stdout, result.stderr)
        return result
