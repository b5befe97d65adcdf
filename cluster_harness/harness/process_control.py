"""Teardown of process trees started by tests."""

import dataclasses
import logging
import time

import psutil

from cluster_harness.harness import reporter as rep

LOGGER = logging.getLogger(__name__)

# Allow process a chance to cleanup before instant death
GRACE_PERIOD = 0.1


@dataclasses.dataclass
class TeardownReport:
    """Outcome of a best-effort teardown.

    Problems are collected in `issues` instead of being raised, so callers can inspect them
    without having to handle them as errors.
    """

    pid: int
    terminated: list[int] = dataclasses.field(default_factory=list)
    issues: list[str] = dataclasses.field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues


def _get_children(parent: psutil.Process) -> list[psutil.Process]:
    try:
        return parent.children(recursive=True)
    except psutil.Error:
        return []


def terminate_process_family(
    pid: int, reporter: rep.Reporter, *, grace_period: float = GRACE_PERIOD
) -> TeardownReport:
    """Terminate a process and all of its children.

    Every process first gets SIGTERM and, after `grace_period`, SIGKILL. Errors are logged and
    recorded in the returned report, never raised.
    """
    report = TeardownReport(pid=pid)

    try:
        parent = psutil.Process(pid)
    except (psutil.Error, ValueError) as exc:
        reporter.log(f"unable to find parent, assuming dead: {exc}")
        return report

    procs = [*_get_children(parent), parent]

    for p in procs:
        try:
            p.terminate()
        except psutil.NoSuchProcess:
            report.terminated.append(p.pid)
            continue
        except psutil.Error as exc:
            issue = f"unable to terminate pid {p.pid}: {exc}"
            reporter.log(issue)
            report.issues.append(issue)
            continue

        time.sleep(grace_period)
        try:
            p.kill()
        except psutil.NoSuchProcess:
            # Exited within the grace period
            pass
        except psutil.Error as exc:
            issue = f"unable to kill pid {p.pid}: {exc}"
            reporter.log(issue)
            report.issues.append(issue)
            continue

        report.terminated.append(p.pid)

    if report.issues:
        LOGGER.warning(f"Teardown of process tree {pid} finished with issues: {report.issues}")
    return report
