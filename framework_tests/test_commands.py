import threading
import time

import psutil
import pytest

from cluster_harness.harness import commands
from cluster_harness.harness import reporter as rep

# The `sleep` is not the last command, so the shell forks it instead of replacing itself with it
CHATTY_DAEMON = ["sh", "-c", "echo out-line; echo err-line >&2; sleep 60; echo done"]


@pytest.fixture
def reporter() -> rep.LoggingReporter:
    return rep.LoggingReporter(name="test")


def _wait_until(func, timeout: float = 10) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if func():
            return
        time.sleep(0.05)
    msg = "Condition not met in time"
    raise AssertionError(msg)


def _has_children(pid: int) -> bool:
    return bool(psutil.Process(pid).children())


class TestCommandStr:
    def test_quoting(self):
        args = ["../../out/minikube", "ssh", "-p", "prof", "sudo crictl images"]
        assert commands.command_str(args) == 'out/minikube ssh -p prof "sudo crictl images"'

    def test_output(self):
        result = commands.CommandResult(args=("ls",), stdout=b"foo\n", stderr=b"")
        assert result.output() == "-- stdout --\nfoo\n\n-- /stdout --"

        result = commands.CommandResult(args=("ls",), stdout=b"foo", stderr=b"bar")
        assert result.output() == (
            "-- stdout --\nfoo\n-- /stdout --\n** stderr ** \nbar\n** /stderr **"
        )

        assert commands.CommandResult(args=("ls",)).output() == ""

    def test_empty_command(self):
        with pytest.raises(ValueError, match="empty"):
            commands.CommandSpec(args=[])


class TestRun:
    def test_success(self, reporter: rep.LoggingReporter):
        spec = commands.CommandSpec(args=["sh", "-c", "echo out; echo err >&2"])

        result = commands.run(spec=spec, reporter=reporter)

        assert result.exit_code == 0
        assert result.stdout == b"out\n"
        assert result.stderr == b"err\n"
        assert result.args == ("sh", "-c", "echo out; echo err >&2")
        assert reporter.lines == ['(dbg) Run:  sh -c "echo out; echo err >&2"']

    def test_slow_command_logged(
        self, reporter: rep.LoggingReporter, monkeypatch: pytest.MonkeyPatch
    ):
        monkeypatch.setattr(commands, "SLOW_COMMAND_SECS", 0)

        commands.run(spec=commands.CommandSpec(args=["true"]), reporter=reporter)

        assert len(reporter.lines) == 2
        assert reporter.lines[1].startswith("(dbg) Done: true: (")

    def test_env(self, reporter: rep.LoggingReporter):
        spec = commands.CommandSpec(
            args=["sh", "-c", 'echo "$HARNESS_TEST_VAR:$PATH"'], env={"HARNESS_TEST_VAR": "foo"}
        )
        result = commands.run(spec=spec, reporter=reporter)
        value, path = result.stdout.decode().strip().split(":", maxsplit=1)
        assert value == "foo"
        # The environment is merged with the current one
        assert path

    def test_cwd(self, reporter: rep.LoggingReporter, tmp_path):
        result = commands.run(commands.CommandSpec(args=["pwd"], cwd=tmp_path), reporter=reporter)
        assert result.stdout.decode().strip() == str(tmp_path.resolve())

    def test_non_zero_exit(self, reporter: rep.LoggingReporter):
        spec = commands.CommandSpec(args=["sh", "-c", "echo partial; echo oops >&2; exit 3"])

        with pytest.raises(commands.CommandError) as excinfo:
            commands.run(spec=spec, reporter=reporter)

        err = excinfo.value
        assert err.exit_code == 3
        assert err.result.stdout == b"partial\n"
        assert err.result.stderr == b"oops\n"
        assert "exit status 3" in str(err)
        assert "oops" in str(err)
        assert reporter.lines[-1].startswith('(dbg) Non-zero exit: sh -c "echo partial;')
        assert "oops" in reporter.lines[-1]

    def test_launch_failure(self, reporter: rep.LoggingReporter):
        spec = commands.CommandSpec(args=["/nonexistent/minikube", "start"])

        with pytest.raises(commands.CommandError) as excinfo:
            commands.run(spec=spec, reporter=reporter)

        assert excinfo.value.exit_code == -1
        assert isinstance(excinfo.value.__cause__, FileNotFoundError)

    def test_timeout(self, reporter: rep.LoggingReporter):
        spec = commands.CommandSpec(args=["sh", "-c", "echo started; sleep 30"], timeout=0.5)

        start = time.monotonic()
        with pytest.raises(commands.CommandCancelledError) as excinfo:
            commands.run(spec=spec, reporter=reporter)

        assert time.monotonic() - start < 10
        assert "timed out" in excinfo.value.reason

    def test_cancel(self, reporter: rep.LoggingReporter):
        cancel_event = threading.Event()
        spec = commands.CommandSpec(args=["sleep", "30"], cancel_event=cancel_event)
        timer = threading.Timer(0.3, cancel_event.set)
        timer.start()

        start = time.monotonic()
        try:
            with pytest.raises(commands.CommandCancelledError) as excinfo:
                commands.run(spec=spec, reporter=reporter)
        finally:
            timer.cancel()

        assert time.monotonic() - start < 10
        assert excinfo.value.reason == "cancelled"
        assert isinstance(excinfo.value, commands.CommandError)


class TestSession:
    def test_stop(self, reporter: rep.LoggingReporter):
        session = commands.start(spec=commands.CommandSpec(args=CHATTY_DAEMON), reporter=reporter)
        pid = session.pid
        _wait_until(lambda: _has_children(pid))
        children = psutil.Process(pid).children(recursive=True)

        report = session.stop()

        assert report is not None
        assert report.ok
        assert session.process is None
        assert session.returncode is not None
        __, alive = psutil.wait_procs(children, timeout=10)
        assert not alive
        # Output is discarded when the test didn't fail
        assert not any(" stdout:\n" in line for line in reporter.lines)
        assert not any(" stderr:\n" in line for line in reporter.lines)

    def test_stop_twice(self, reporter: rep.LoggingReporter):
        session = commands.start(spec=commands.CommandSpec(args=["sleep", "60"]), reporter=reporter)

        assert session.stop() is not None
        assert session.stop() is None
        assert reporter.lines[-1].endswith("has no process. Maybe it's dead?")

    def test_output_dumped_on_failure(self, reporter: rep.LoggingReporter):
        session = commands.start(spec=commands.CommandSpec(args=CHATTY_DAEMON), reporter=reporter)
        _wait_until(lambda: _has_children(session.pid))

        reporter.mark_failed()
        session.stop()

        stdout_lines = [line for line in reporter.lines if "stdout:\nout-line\n" in line]
        stderr_lines = [line for line in reporter.lines if "stderr:\nerr-line\n" in line]
        assert len(stdout_lines) == 1
        assert len(stderr_lines) == 1

    def test_read_output(self, reporter: rep.LoggingReporter):
        with commands.start(
            spec=commands.CommandSpec(args=CHATTY_DAEMON), reporter=reporter
        ) as session:
            assert session.stdout is not None
            assert session.stdout.readline() == b"out-line\n"

        assert session.process is None

    def test_cancel(self, reporter: rep.LoggingReporter):
        cancel_event = threading.Event()
        session = commands.start(
            spec=commands.CommandSpec(args=["sleep", "60"], cancel_event=cancel_event),
            reporter=reporter,
        )

        cancel_event.set()
        _wait_until(lambda: session.process is None)

        assert any(line.endswith("cancelled") for line in reporter.lines)
        assert session.stop() is None

    def test_launch_failure(self, reporter: rep.LoggingReporter):
        with pytest.raises(commands.CommandError) as excinfo:
            commands.start(
                spec=commands.CommandSpec(args=["/nonexistent/tunnel"]), reporter=reporter
            )
        assert excinfo.value.exit_code == -1
