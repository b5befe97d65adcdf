"""Running external commands from tests.

`run` executes a short-lived command to completion and captures all of its output. `start` launches
a long-lived command (e.g. `minikube tunnel` or `kubectl proxy`) in the background and returns
a `Session` that gives access to the output streams and can tear the whole process tree down.
"""

import dataclasses
import logging
import os
import subprocess
import threading
import time
import typing as tp

from cluster_harness.harness import process_control
from cluster_harness.harness import reporter as rep
from cluster_harness.utils import helpers
from cluster_harness.utils import types as ttypes

LOGGER = logging.getLogger(__name__)

# Commands running longer than this get a completion log line
SLOW_COMMAND_SECS = 1.0
# How often a running command checks for cancellation or timeout
CANCEL_CHECK_INTERVAL = 0.2
# Time to wait for a terminated session process to be reaped
REAP_TIMEOUT = 5.0


@dataclasses.dataclass(frozen=True)
class CommandSpec:
    """Program path and arguments, plus the environment to run them in."""

    args: tp.Sequence[str]
    env: dict[str, str] | None = None
    cwd: ttypes.FileType = ""
    timeout: float | None = None
    cancel_event: threading.Event | None = None

    def __post_init__(self) -> None:
        if not self.args:
            msg = "Command can't be empty."
            raise ValueError(msg)

    def get_env(self) -> dict[str, str] | None:
        if self.env is None:
            return None
        return {**os.environ, **self.env}


def command_str(args: tp.Sequence[str]) -> str:
    """Return a human readable command string that does not induce eye fatigue."""
    parts = [str(args[0]).removeprefix("../../")]
    for a in args[1:]:
        a = str(a)
        parts.append(f'"{a}"' if " " in a else a)
    return " ".join(parts)


@dataclasses.dataclass(frozen=True)
class CommandResult:
    """Result of a finished command."""

    args: tuple[str, ...]
    stdout: bytes = b""
    stderr: bytes = b""
    exit_code: int = 0
    elapsed: float = 0.0

    def command(self) -> str:
        return command_str(self.args)

    def output(self) -> str:
        """Return human-readable output for an execution result."""
        parts = []
        if self.stdout:
            parts.append(f"-- stdout --\n{self.stdout.decode(errors='replace')}\n-- /stdout --")
        if self.stderr:
            parts.append(f"** stderr ** \n{self.stderr.decode(errors='replace')}\n** /stderr **")
        return "\n".join(parts)


class CommandError(Exception):
    """Command failed to launch or finished with non-zero exit code."""

    def __init__(self, result: CommandResult, reason: str = "") -> None:
        self.result = result
        self.reason = reason or f"exit status {result.exit_code}"
        msg = f"`{result.command()}` failed: {self.reason}"
        output = result.output()
        if output:
            msg = f"{msg}\n{output}"
        super().__init__(msg)

    @property
    def exit_code(self) -> int:
        return self.result.exit_code


class CommandCancelledError(CommandError):
    """Command was abandoned because it was cancelled or ran out of time."""


def _communicate(
    p: subprocess.Popen, spec: CommandSpec, start: float, reporter: rep.Reporter
) -> tuple[bytes, bytes, str]:
    """Wait for the process to finish and collect its output.

    Return also the reason why the process was abandoned, if it was.
    """
    if spec.timeout is None and spec.cancel_event is None:
        stdout, stderr = p.communicate()
        return stdout, stderr, ""

    deadline = None if spec.timeout is None else start + spec.timeout
    while True:
        wait_secs = CANCEL_CHECK_INTERVAL
        if deadline is not None:
            wait_secs = max(0.0, min(wait_secs, deadline - time.monotonic()))

        try:
            stdout, stderr = p.communicate(timeout=wait_secs)
        except subprocess.TimeoutExpired:
            pass
        else:
            return stdout, stderr, ""

        if spec.cancel_event is not None and spec.cancel_event.is_set():
            reason = "cancelled"
        elif deadline is not None and time.monotonic() >= deadline:
            reason = f"timed out after {helpers.format_duration(spec.timeout or 0)}"
        else:
            continue

        # Children could keep the output pipes open, so kill the whole family
        process_control.terminate_process_family(pid=p.pid, reporter=reporter)
        stdout, stderr = p.communicate()
        return stdout, stderr, reason


def run(spec: CommandSpec, reporter: rep.Reporter) -> CommandResult:
    """Run a command to completion, log it and return its result.

    Raises:
        CommandError: The command couldn't be launched or exited with non-zero exit code.
        CommandCancelledError: The command was cancelled or timed out.
    """
    args = tuple(str(a) for a in spec.args)
    cmd = command_str(args)
    reporter.log(f"(dbg) Run:  {cmd}")

    start = time.monotonic()
    try:
        p = subprocess.Popen(
            args,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=spec.get_env(),
            cwd=spec.cwd or None,
        )
    except OSError as exc:
        result = CommandResult(args=args, exit_code=-1, elapsed=time.monotonic() - start)
        reporter.log(f"(dbg) Non-zero exit: {cmd}: {exc}")
        raise CommandError(result, reason=str(exc)) from exc

    with p:
        stdout, stderr, abandon_reason = _communicate(
            p=p, spec=spec, start=start, reporter=reporter
        )
    elapsed = time.monotonic() - start
    elapsed_str = helpers.format_duration(elapsed)

    result = CommandResult(
        args=args, stdout=stdout, stderr=stderr, exit_code=p.returncode, elapsed=elapsed
    )

    if abandon_reason:
        reporter.log(
            f"(dbg) Abandoned: {cmd}: {abandon_reason} ({elapsed_str})\n{result.output()}"
        )
        raise CommandCancelledError(result, reason=abandon_reason)

    if result.exit_code != 0:
        reporter.log(
            f"(dbg) Non-zero exit: {cmd}: exit status {result.exit_code} ({elapsed_str})\n"
            f"{result.output()}"
        )
        raise CommandError(result)

    # Reduce log spam
    if elapsed > SLOW_COMMAND_SECS:
        reporter.log(f"(dbg) Done: {cmd}: ({elapsed_str})")

    return result


class Session:
    """A command running in the background.

    The output streams are not read automatically. Callers that care about the output need to
    read `stdout` / `stderr` themselves, otherwise the output is logged only if the test failed
    and the session is being stopped. A chatty process that nobody reads from can fill the pipe
    buffer and block on write; sessions are expected to be short enough for this not to matter.
    """

    def __init__(
        self, args: tuple[str, ...], process: subprocess.Popen, reporter: rep.Reporter
    ) -> None:
        self.args = args
        self.process: subprocess.Popen | None = process
        self.reporter = reporter
        self.stdout: tp.IO[bytes] | None = process.stdout
        self.stderr: tp.IO[bytes] | None = process.stderr
        self.pid = process.pid
        self.returncode: int | None = None
        self._stop_lock = threading.Lock()

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()

    def _watch(self, cancel_event: threading.Event | None, timeout: float | None) -> None:
        """Stop the session once it is cancelled or runs out of time."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            process = self.process
            if process is None or process.poll() is not None:
                return
            if cancel_event is not None and cancel_event.is_set():
                self.reporter.log(f"(dbg) {list(self.args)} cancelled")
                break
            if deadline is not None and time.monotonic() >= deadline:
                timeout_str = helpers.format_duration(timeout or 0)
                self.reporter.log(f"(dbg) {list(self.args)} timed out after {timeout_str}")
                break
            time.sleep(CANCEL_CHECK_INTERVAL)

        self.stop()

    def _drain(self, name: str, stream: tp.IO[bytes] | None) -> None:
        if stream is None:
            return
        try:
            data = stream.read()
        except (OSError, ValueError) as exc:
            self.reporter.log(f"read {name} failed: {exc}")
            return
        if data:
            self.reporter.log(
                f"(dbg) {list(self.args)} {name}:\n{data.decode(errors='replace')}"
            )

    def _close_streams(self) -> None:
        for stream in (self.stdout, self.stderr):
            if stream is not None:
                stream.close()

    def stop(self) -> process_control.TeardownReport | None:
        """Stop the background process and all of its children.

        Stopping a session that has no process (never started or already stopped) is a no-op.
        """
        with self._stop_lock:
            self.reporter.log(f"(dbg) stopping {list(self.args)} ...")
            process = self.process
            if process is None:
                self.reporter.log(f"{list(self.args)} has no process. Maybe it's dead?")
                return None

            report = process_control.terminate_process_family(
                pid=process.pid, reporter=self.reporter
            )

            if self.reporter.failed():
                self._drain(name="stdout", stream=self.stdout)
                self._drain(name="stderr", stream=self.stderr)

            try:
                self.returncode = process.wait(timeout=REAP_TIMEOUT)
            except subprocess.TimeoutExpired:
                issue = f"pid {process.pid} was not reaped within {REAP_TIMEOUT}s"
                self.reporter.log(issue)
                report.issues.append(issue)

            self._close_streams()
            self.process = None
            return report


def start(spec: CommandSpec, reporter: rep.Reporter) -> Session:
    """Start a command in the background, streaming its output.

    Raises:
        CommandError: The command couldn't be launched.
    """
    args = tuple(str(a) for a in spec.args)
    reporter.log(f"(dbg) daemon: {list(args)}")

    try:
        p = subprocess.Popen(
            args,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=spec.get_env(),
            cwd=spec.cwd or None,
        )
    except OSError as exc:
        result = CommandResult(args=args, exit_code=-1)
        reporter.log(f"(dbg) daemon failed to start: {command_str(args)}: {exc}")
        raise CommandError(result, reason=str(exc)) from exc

    session = Session(args=args, process=p, reporter=reporter)
    LOGGER.debug(f"Started `{command_str(args)}` in background with PID {p.pid}.")

    if spec.cancel_event is not None or spec.timeout is not None:
        threading.Thread(
            target=session._watch,
            kwargs={"cancel_event": spec.cancel_event, "timeout": spec.timeout},
            name=f"session-watch-{p.pid}",
            daemon=True,
        ).start()

    return session
