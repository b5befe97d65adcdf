import functools
import logging
import pathlib as pl
import time
import typing as tp

from cluster_harness.utils import temptools


@functools.cache
def get_framework_log_path() -> pl.Path:
    return temptools.get_pytest_worker_tmp() / "framework.log"


@functools.cache
def framework_logger() -> logging.Logger:
    """Get logger for the `framework.log` file.

    The logger is configured per worker. It can be used for logging (and later reporting) events
    like a failure to tear down a process tree.
    """

    class UTCFormatter(logging.Formatter):
        converter = time.gmtime  # type: ignore[assignment]

    formatter = UTCFormatter("%(asctime)s %(levelname)s %(message)s")
    handler = logging.FileHandler(get_framework_log_path())
    handler.setFormatter(formatter)

    logger = logging.getLogger("framework")
    logger.setLevel(logging.INFO)
    logger.addHandler(handler)

    return logger


def log_teardown_issues(test_name: str, args: tp.Sequence[str], issues: tp.Sequence[str]) -> None:
    """Record that a background process of a test was not torn down cleanly."""
    if not issues:
        return
    framework_logger().warning(
        f"{test_name}: teardown of {list(args)} finished with {len(issues)} issue(s):\n  "
        + "\n  ".join(issues)
    )
