"""Minimal reporting capability used by the harness.

The harness needs only two things from a test framework: a sink for log lines and a way to find
out whether the current test has already failed (to decide if post-mortem output is worth
collecting). Anything providing these can be passed as a reporter, so the harness can be used
outside of pytest as well.
"""

import logging
import typing as tp

LOGGER = logging.getLogger(__name__)


class Reporter(tp.Protocol):
    def log(self, msg: str) -> None: ...

    def failed(self) -> bool: ...


class LoggingReporter:
    """Reporter that logs through `logging` and keeps the failure state itself."""

    def __init__(self, name: str = "", logger: logging.Logger | None = None) -> None:
        self.name = name
        self.logger = logger or LOGGER
        self.lines: list[str] = []
        self._failed = False

    def log(self, msg: str) -> None:
        self.lines.append(msg)
        if self.name:
            self.logger.info("%s: %s", self.name, msg)
        else:
            self.logger.info(msg)

    def failed(self) -> bool:
        return self._failed

    def mark_failed(self) -> None:
        self._failed = True
