"""Staggering of cluster starts of concurrently running tests.

Starting several clusters at exactly the same time makes them compete for CPU, memory and disk,
which leads to timeouts. Test cases therefore ask the `StartSlotScheduler` for a start slot right
before starting their cluster. Slots are spaced at least `offset` seconds apart. Only the starts are
serialized, the tests themselves keep running in parallel.

Under pytest-xdist the tests run in several worker processes. The workers share the last assigned
start time through a state file in the temporary directory of the test run, guarded by
`FileLockIfXdist`.
"""

import contextlib
import datetime
import logging
import pathlib as pl
import threading
import time
import typing as tp

from cluster_harness.harness import reporter as rep
from cluster_harness.utils import configuration
from cluster_harness.utils import helpers
from cluster_harness.utils import locking
from cluster_harness.utils import types as ttypes

LOGGER = logging.getLogger(__name__)


class StartSlotScheduler:
    """Assign spaced-out start times to callers.

    A single instance is meant to be created per test run (per worker under pytest-xdist) and
    shared by all test cases. Instances of different workers are tied together by `state_file`.
    """

    def __init__(
        self,
        offset: float = configuration.START_OFFSET,
        *,
        parallel: bool | None = None,
        state_file: ttypes.FileType = "",
        clock: tp.Callable[[], float] = time.time,
        sleep: tp.Callable[[float], None] = time.sleep,
    ) -> None:
        self.offset = offset
        if parallel is None:
            # Tests run one after another without xdist, and the `none` driver can't start
            # clusters in parallel at all
            parallel = configuration.IS_XDIST and not configuration.NONE_DRIVER
        self.parallel = parallel
        self.state_file = pl.Path(state_file) if state_file else None
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._start_times: list[float] = []

    @property
    def start_times(self) -> list[float]:
        """Start times assigned by this instance."""
        with self._lock:
            return list(self._start_times)

    def _log_slot(self, wakeup: float) -> None:
        """Record the assigned slot in the scheduling log shared by all workers."""
        if not configuration.SCHEDULING_LOG:
            return

        with (
            locking.FileLockIfXdist(f"{configuration.SCHEDULING_LOG}.lock"),
            open(configuration.SCHEDULING_LOG, "a", encoding="utf-8") as logfile,
        ):
            logfile.write(
                f"{datetime.datetime.now(tz=datetime.timezone.utc)}: "
                f"start slot at {helpers.format_timestamp(wakeup)}\n"
            )

    def _shared_lock(self) -> tp.ContextManager:
        if self.state_file is None:
            return contextlib.nullcontext()
        return locking.FileLockIfXdist(f"{self.state_file}.lock")

    def _last_start(self) -> float | None:
        if self.state_file is None:
            return self._start_times[-1] if self._start_times else None

        if not self.state_file.exists():
            return None
        content = self.state_file.read_text(encoding="utf-8").strip()
        return float(content) if content else None

    def _reserve(self) -> float:
        with self._lock, self._shared_lock():
            now = self._clock()
            wakeup = now
            last_start = self._last_start()
            if last_start is not None:
                next_start = last_start + self.offset
                # Ignore `next_start` if it is in the past, the offset is still guaranteed for
                # the next caller
                if now < next_start:
                    wakeup = next_start
            self._start_times.append(wakeup)
            if self.state_file is not None:
                self.state_file.write_text(f"{wakeup!r}\n", encoding="utf-8")
        return wakeup

    def wait_for_start_slot(self, reporter: rep.Reporter | None = None) -> float:
        """Block until it is the caller's turn to start a cluster.

        Return the assigned start time.
        """
        log = reporter.log if reporter else LOGGER.info

        if not self.parallel:
            return self._clock()

        wakeup = self._reserve()
        self._log_slot(wakeup=wakeup)

        now = self._clock()
        if now < wakeup:
            delay = wakeup - now
            log(
                f"Waiting for start slot at {helpers.format_timestamp(wakeup)} "
                f"(sleeping {helpers.format_duration(delay)}) ..."
            )
            self._sleep(delay)
        else:
            log(f"No need to wait for start slot, it is already {helpers.format_timestamp(now)}")

        return wakeup
