"""Persistent shell session with sentinel-delimited command output.

One shell process lives for the whole agent run, so the working directory,
exported variables and shell functions carry over from one command to the
next. Each submitted command is followed by a printf of a random marker and
the command's exit status; output is read line by line until that exact
line shows up.
"""

import os
import queue
import re
import shutil
import signal
import subprocess
import sys
import threading
import time
import uuid
from dataclasses import dataclass

from .report import SessionClosedError, SessionStartError

START_TIMEOUT = 10  # seconds for the startup handshake
INTERRUPT_GRACE = 5  # seconds to wait for the marker after SIGINT
_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals
_CLOSE_WAIT_TIMEOUT = 1
_POLL_INTERVAL = 0.2  # seconds between liveness checks while waiting for output

_SHELL_ENV = {"PAGER": "cat", "GIT_PAGER": "cat", "TERM": "dumb"}


@dataclass
class CommandOutput:
    """Captured result of one submitted command."""

    output: str
    exit_code: int
    timed_out: bool = False
    duration: float = 0.0


def default_shell() -> str:
    """Prefer bash, fall back to /bin/sh."""
    return shutil.which("bash") or "/bin/sh"


def quote_for_eval(command: str) -> str:
    """Single-quote a command so the shell passes it to eval untouched."""
    return "'" + command.replace("'", "'\\''") + "'"


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill the shell and everything left in its process group, then wait."""
    if sys.platform != "win32":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # group already gone
    try:
        proc.kill()
    except OSError:
        pass  # already dead
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass  # process is unkillable, give up


class ShellSession:
    """Owns one interactive shell process for the lifetime of an agent run.

    Only one command may be outstanding at a time. Use as a context manager
    or call close() explicitly; close() is idempotent.
    """

    def __init__(
        self,
        shell: str | None = None,
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ):
        self.shell = shell or default_shell()
        self.cwd = cwd
        self.env = env
        self.timeout = timeout
        self.marker = f"__AGENTIC_TERMINAL_{uuid.uuid4().hex}__"
        self._marker_re = re.compile(re.escape(self.marker) + r" (-?\d+)")
        self._proc: subprocess.Popen | None = None
        self._lines: queue.Queue = queue.Queue()
        self._reader: threading.Thread | None = None
        self._closed = False

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *exc_info):
        self.close()

    @property
    def alive(self) -> bool:
        return (
            self._proc is not None
            and not self._closed
            and self._proc.poll() is None
        )

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    def _argv(self) -> list[str]:
        if os.path.basename(self.shell) == "bash":
            return [self.shell, "--noprofile", "--norc"]
        return [self.shell]

    def start(self) -> None:
        """Launch the shell and wait until it answers a first marker."""
        if self._proc is not None:
            raise SessionStartError("shell session already started")
        if self._closed:
            raise SessionStartError("shell session already closed")

        env = os.environ.copy()
        if self.env:
            env.update(self.env)
        env.update(_SHELL_ENV)

        popen_kwargs: dict = dict(
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            cwd=self.cwd,
            env=env,
        )
        if sys.platform != "win32":
            popen_kwargs["start_new_session"] = True

        try:
            self._proc = subprocess.Popen(self._argv(), **popen_kwargs)
        except OSError as e:
            raise SessionStartError(f"failed to start shell {self.shell!r}: {e}") from e

        self._reader = threading.Thread(target=self._pump, daemon=True)
        self._reader.start()

        # An interrupt stops the foreground command but must not end the shell.
        try:
            self._write("trap : INT\n" + self._marker_line())
            self._collect("<startup>", START_TIMEOUT, interrupt=False)
        except SessionClosedError as e:
            self.close()
            raise SessionStartError(f"shell {self.shell!r} did not start: {e}") from e

    def _pump(self) -> None:
        stream = self._proc.stdout
        try:
            for raw in iter(stream.readline, b""):
                self._lines.put(raw.decode("utf-8", errors="replace"))
        except (OSError, ValueError):
            pass  # pipe closed during shutdown
        self._lines.put(None)

    def _marker_line(self) -> str:
        return f"printf '\\n%s %d\\n' {self.marker} \"$?\"\n"

    def _write(self, text: str) -> None:
        try:
            self._proc.stdin.write(text.encode("utf-8"))
            self._proc.stdin.flush()
        except (BrokenPipeError, OSError, ValueError) as e:
            raise SessionClosedError(f"shell input pipe is closed: {e}") from e

    def submit(self, command: str, *, timeout: float | None = None) -> CommandOutput:
        """Run one command in the shell and return its combined output."""
        if self._proc is None:
            raise SessionClosedError("shell session was never started")
        if self._closed:
            raise SessionClosedError("shell session is closed")
        returncode = self._proc.poll()
        if returncode is not None:
            raise SessionClosedError(f"shell already exited with status {returncode}")

        if timeout is None:
            timeout = self.timeout
        started = time.monotonic()
        self._write(f"eval {quote_for_eval(command)} </dev/null\n" + self._marker_line())
        result = self._collect(command, timeout)
        result.duration = time.monotonic() - started
        return result

    def _collect(
        self, command: str, timeout: float | None, *, interrupt: bool = True
    ) -> CommandOutput:
        chunks: list[str] = []
        timed_out = False
        deadline = None if timeout is None else time.monotonic() + timeout

        while True:
            now = time.monotonic()
            if deadline is not None and now >= deadline:
                if timed_out or not interrupt:
                    raise SessionClosedError(
                        f"shell stopped responding while running {command!r}"
                    )
                timed_out = True
                self._interrupt()
                deadline = now + INTERRUPT_GRACE
                continue

            wait = _POLL_INTERVAL if deadline is None else min(_POLL_INTERVAL, deadline - now)
            try:
                line = self._lines.get(timeout=wait)
            except queue.Empty:
                # Background jobs can hold the pipe open after the shell dies.
                status = self._proc.poll()
                if status is not None:
                    raise SessionClosedError(
                        f"shell exited (status {status}) while running {command!r}"
                    )
                continue

            if line is None:
                self._lines.put(None)  # keep EOF visible to later calls
                status = self._wait_status()
                raise SessionClosedError(
                    f"shell exited (status {status}) while running {command!r}"
                )

            m = self._marker_re.fullmatch(line.rstrip("\r\n"))
            if m:
                text = "".join(chunks)
                # Drop the newline printf emits ahead of the marker, then the
                # command's own final newline.
                if text.endswith("\n"):
                    text = text[:-1]
                text = text.removesuffix("\n")
                return CommandOutput(
                    output=text, exit_code=int(m.group(1)), timed_out=timed_out
                )
            chunks.append(line)

    def _interrupt(self) -> None:
        try:
            if sys.platform != "win32":
                os.killpg(self._proc.pid, signal.SIGINT)
            else:
                self._proc.send_signal(signal.SIGINT)
        except OSError:
            pass  # already exited; EOF will surface on the next read

    def _wait_status(self):
        try:
            return self._proc.wait(timeout=_CLOSE_WAIT_TIMEOUT)
        except subprocess.TimeoutExpired:
            return "unknown"

    def close(self) -> None:
        """Terminate the shell and release its pipes. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        proc = self._proc
        if proc is None:
            return

        try:
            proc.stdin.close()
        except OSError:
            pass  # broken pipe on a dead shell
        try:
            proc.wait(timeout=_CLOSE_WAIT_TIMEOUT)
        except subprocess.TimeoutExpired:
            pass
        # Reap anything the shell left running in its group.
        _kill_process_tree(proc)

        if self._reader is not None:
            self._reader.join(timeout=2)
        try:
            proc.stdout.close()
        except OSError:
            pass
