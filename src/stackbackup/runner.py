"""External command execution used by snapshot sources.

Every interaction with the container runtime goes through a
:class:`CommandRunner`, so the engine never needs to know whether a tool runs
in a container, a VM or on bare metal. Tests substitute a fake runner.
"""

import shutil
import subprocess
import tempfile
import threading
from dataclasses import dataclass
from typing import BinaryIO, List, Optional

from .errors import CommandTimeout


CHUNK_SIZE = 64 * 1024


@dataclass
class CommandResult:
    """Outcome of an external command."""

    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Runs external commands with optional stdin/stdout streaming and a timeout."""

    def __init__(self, notifier=None):
        self.notifier = notifier

    def run(self, program: str, args: List[str], stdin: Optional[BinaryIO] = None,
            cwd: Optional[str] = None, timeout: Optional[float] = None) -> CommandResult:
        """Run a command and capture its output.

        Args:
            program: Executable name
            args: Argument list
            stdin: Optional readable binary stream copied to the process
            cwd: Optional working directory
            timeout: Seconds before the process is killed

        Returns:
            CommandResult with decoded stdout and stderr

        Raises:
            CommandTimeout: If the command exceeds ``timeout``
        """
        with tempfile.TemporaryFile() as out, tempfile.TemporaryFile() as err:
            returncode = self._execute(program, args, stdin, out, err, cwd, timeout)
            out.seek(0)
            err.seek(0)
            return CommandResult(
                returncode=returncode,
                stdout=out.read().decode('utf-8', errors='replace'),
                stderr=err.read().decode('utf-8', errors='replace'),
            )

    def stream(self, program: str, args: List[str], sink: BinaryIO,
               stdin: Optional[BinaryIO] = None, cwd: Optional[str] = None,
               timeout: Optional[float] = None) -> CommandResult:
        """Run a command, copying its stdout chunk by chunk into ``sink``.

        The output is never held in memory as a whole, so ``sink`` can be a
        compressor wrapping a file.

        Returns:
            CommandResult whose ``stdout`` is empty and ``stderr`` is captured
        """
        with tempfile.TemporaryFile() as err:
            returncode = self._execute(program, args, stdin, sink, err, cwd, timeout, pump_stdout=True)
            err.seek(0)
            return CommandResult(returncode=returncode,
                                 stderr=err.read().decode('utf-8', errors='replace'))

    def _execute(self, program: str, args: List[str], stdin: Optional[BinaryIO],
                 stdout: BinaryIO, stderr: BinaryIO, cwd: Optional[str],
                 timeout: Optional[float], pump_stdout: bool = False) -> int:
        command = [program] + list(args)
        display = ' '.join(command)
        if self.notifier:
            self.notifier.debug(f"Running: {display}")

        process = subprocess.Popen(
            command,
            stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE if pump_stdout else stdout,
            stderr=stderr,
            cwd=cwd,
        )

        timed_out = threading.Event()

        def kill():
            timed_out.set()
            process.kill()

        timer = threading.Timer(timeout, kill) if timeout else None
        feeder = None
        try:
            if timer:
                timer.daemon = True
                timer.start()

            if stdin is not None:
                feeder = _Feeder(stdin, process)
                feeder.start()

            if pump_stdout:
                shutil.copyfileobj(process.stdout, stdout, CHUNK_SIZE)
                process.stdout.close()

            returncode = process.wait()
            if feeder:
                feeder.join()
        except BaseException:
            process.kill()
            process.wait()
            raise
        finally:
            if timer:
                timer.cancel()

        if timed_out.is_set() and returncode < 0:
            raise CommandTimeout(display, timeout)

        if feeder and feeder.error is not None:
            raise feeder.error

        return returncode


class _Feeder(threading.Thread):
    """Copies a source stream into a process stdin pipe, then closes it.

    An error reading ``source`` kills the process, so it never sees the
    truncated input as a clean end of file, and is kept in ``error`` for the
    caller to raise once the process has exited.
    """

    def __init__(self, source: BinaryIO, process: subprocess.Popen):
        super().__init__(daemon=True)
        self.source = source
        self.process = process
        self.pipe = process.stdin
        self.error: Optional[BaseException] = None

    def run(self) -> None:
        try:
            shutil.copyfileobj(self.source, self.pipe, CHUNK_SIZE)
        except BrokenPipeError:
            # The process exited early; its return code reports the failure.
            pass
        except Exception as e:
            self.error = e
            self.process.kill()
        finally:
            try:
                self.pipe.close()
            except BrokenPipeError:
                pass
