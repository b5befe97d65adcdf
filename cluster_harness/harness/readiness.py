"""Waiting for labeled pods to become healthy.

Pods are healthy when one of them has already successfully finished (a short-lived pod that won't
be restarted), or when all of them have been running for a while. Running for a while matters,
because a pod in a crash loop is "Running" for a few moments between restarts.
"""

import dataclasses
import logging
import time
import typing as tp

from cluster_harness.harness import reporter as rep
from cluster_harness.utils import configuration
from cluster_harness.utils import helpers

LOGGER = logging.getLogger(__name__)

PHASE_RUNNING = "Running"
PHASE_SUCCEEDED = "Succeeded"


class StatusQueryError(Exception):
    """Status of resources couldn't be retrieved (e.g. apiserver is being rescheduled)."""


class ReadinessTimeoutError(Exception):
    """Resources didn't become ready in time."""

    def __init__(self, selector: str, timeout: float, names: list[str]) -> None:
        self.selector = selector
        self.timeout = timeout
        self.names = names
        msg = (
            f"{selector} within {helpers.format_duration(timeout)}: "
            "timed out waiting for the condition"
        )
        super().__init__(msg)


@dataclasses.dataclass(frozen=True, order=True)
class ResourceCondition:
    type: str
    reason: str = ""
    message: str = ""


@dataclasses.dataclass(frozen=True, order=True)
class ResourceObservation:
    """Snapshot of a pod status from a single query."""

    name: str
    phase: str
    uid: str = ""
    conditions: tuple[ResourceCondition, ...] = ()


class StatusSource(tp.Protocol):
    def list_resources(self, namespace: str, selector: str) -> list[ResourceObservation]:
        """Return all resources matching the label selector.

        Raises:
            StatusQueryError: The query failed.
        """
        ...

    def dump_diagnostics(self, namespace: str, names: tp.Iterable[str]) -> None:
        """Log information that helps with debugging of resources that didn't become ready."""
        ...


def status_msg(obs: ResourceObservation) -> str:
    """Return a human-readable pod status, for generating debug status."""
    msg = f'"{obs.name}" [{obs.uid}] {obs.phase}'
    for i, c in enumerate(obs.conditions):
        if c.reason:
            msg += ": " if i == 0 else " / "
            msg += f"{c.type}:{c.reason}"
        if c.message:
            msg += f" ({c.message})"
    return msg


class ReadinessPoller:
    """Poll status of labeled resources until they are ready.

    The caller's thread is blocked for the whole wait. `clock` and `sleep` can be replaced, e.g. by
    a simulated clock in tests.
    """

    def __init__(
        self,
        source: StatusSource,
        reporter: rep.Reporter,
        *,
        interval: float = configuration.POLL_INTERVAL,
        min_uptime: float = configuration.MIN_UPTIME,
        clock: tp.Callable[[], float] = time.monotonic,
        sleep: tp.Callable[[float], None] = time.sleep,
    ) -> None:
        self.source = source
        self.reporter = reporter
        self.interval = interval
        self.min_uptime = min_uptime
        self._clock = clock
        self._sleep = sleep

    def wait_ready(self, namespace: str, selector: str, timeout: float) -> list[str]:
        """Wait for pods matching the `selector` (e.g. `integration-test=busybox`) to be ready.

        Return names of all the pods that were observed.

        Raises:
            ReadinessTimeoutError: The pods didn't become ready within `timeout` seconds.
        """
        # Per-invocation state
        found_names: set[str] = set()
        last_msg = ""
        pod_start: float | None = None

        def _check() -> bool:
            nonlocal last_msg, pod_start

            try:
                observations = self.source.list_resources(namespace=namespace, selector=selector)
            except StatusQueryError as exc:
                self.reporter.log(
                    f"WARNING: pod list for {namespace!r} {selector!r} returned: {exc}"
                )
                # Don't give up, so this is retried in case the apiserver is being rescheduled
                pod_start = None
                return False

            if not observations:
                pod_start = None
                return False

            found_names.update(o.name for o in observations)

            for obs in observations:
                msg = status_msg(obs)
                # Prevent spamming logs with identical messages
                if msg != last_msg:
                    self.reporter.log(msg)
                    last_msg = msg

                # Successful termination of a short-lived process, will not be restarted
                if obs.phase == PHASE_SUCCEEDED:
                    return True

                # Long-running process state
                if obs.phase != PHASE_RUNNING:
                    if pod_start is not None:
                        since = helpers.format_duration(self._clock() - pod_start)
                        self.reporter.log(
                            f"WARNING: {selector} was running {since} ago - may be unstable"
                        )
                    pod_start = None
                    return False

            if pod_start is None:
                pod_start = self._clock()

            return self._clock() - pod_start > self.min_uptime

        start = self._clock()
        self.reporter.log(
            f"(dbg) waiting for pods with labels {selector!r} in namespace {namespace!r} ..."
        )

        ready = False
        while True:
            if _check():
                ready = True
                break
            remaining = timeout - (self._clock() - start)
            if remaining <= 0:
                break
            self._sleep(min(self.interval, remaining))

        names = sorted(found_names)
        elapsed = helpers.format_duration(self._clock() - start)

        if ready:
            self.reporter.log(f"(dbg) pods {selector} up and healthy within {elapsed}")
            return names

        err = ReadinessTimeoutError(selector=selector, timeout=timeout, names=names)
        self.reporter.log(f"pod {selector!r} failed to start: {err}")
        try:
            self.source.dump_diagnostics(namespace=namespace, names=names)
        except Exception as exc:
            self.reporter.log(f"failed to collect diagnostics for {selector!r}: {exc}")
        raise err


def wait_ready(
    source: StatusSource,
    reporter: rep.Reporter,
    namespace: str,
    selector: str,
    timeout: float,
) -> list[str]:
    """Wait for labeled pods to become ready, see `ReadinessPoller.wait_ready`."""
    poller = ReadinessPoller(source=source, reporter=reporter)
    return poller.wait_ready(namespace=namespace, selector=selector, timeout=timeout)
