"""Pytest fixtures that give tests access to the harness.

Load the plugin with `pytest_plugins = ("cluster_harness.pytest_plugins.harness_fixtures",)`
in the top-level `conftest.py`.
"""

import logging
import typing as tp

import pytest
from _pytest.fixtures import FixtureRequest
from _pytest.tmpdir import TempPathFactory

from cluster_harness.harness import cleanup
from cluster_harness.harness import commands
from cluster_harness.harness import kubectl
from cluster_harness.harness import readiness
from cluster_harness.harness import slots
from cluster_harness.utils import configuration
from cluster_harness.utils import framework_log
from cluster_harness.utils import helpers
from cluster_harness.utils import temptools

LOGGER = logging.getLogger(__name__)

PHASE_REPORTS_KEY = pytest.StashKey[dict[str, pytest.TestReport]]()


@pytest.hookimpl(wrapper=True, tryfirst=True)
def pytest_runtest_makereport(
    item: pytest.Item, call: pytest.CallInfo  # noqa: ARG001
) -> tp.Generator[None, pytest.TestReport, pytest.TestReport]:
    """Remember reports of all test phases, so teardown can find out if the test failed."""
    # pylint: disable=unused-argument
    report = yield
    item.stash.setdefault(PHASE_REPORTS_KEY, {})[report.when] = report
    return report


class PytestReporter:
    """Reporter bound to a single pytest test item."""

    def __init__(self, item: pytest.Item) -> None:
        self.item = item
        self.name = item.name

    def log(self, msg: str) -> None:
        LOGGER.info("%s: %s", self.name, msg)

    def failed(self) -> bool:
        reports = self.item.stash.get(PHASE_REPORTS_KEY, {})
        return any(r.failed for r in reports.values())


@pytest.fixture(scope="session", autouse=True)
def init_harness_temp_dirs(tmp_path_factory: TempPathFactory) -> None:
    """Init `PytestTempDirs`."""
    temptools.PytestTempDirs.init(tmp_path_factory=tmp_path_factory)


@pytest.fixture(scope="session")
def start_slot_scheduler(
    init_harness_temp_dirs: None,  # noqa: ARG001
) -> slots.StartSlotScheduler:
    """Return the start slot scheduler shared by all tests of this test run.

    Under pytest-xdist the schedulers of all workers share the last start time.
    """
    # pylint: disable=unused-argument
    state_file = (
        temptools.get_pytest_shared_tmp() / "start_slot.state" if configuration.IS_XDIST else ""
    )
    return slots.StartSlotScheduler(state_file=state_file)


@pytest.fixture
def harness_reporter(request: FixtureRequest) -> PytestReporter:
    return PytestReporter(item=request.node)


@pytest.fixture
def readiness_poller_factory(
    harness_reporter: PytestReporter,
) -> tp.Callable[[str], readiness.ReadinessPoller]:
    """Return a function that creates a poller for pods of a cluster with the given context."""

    def _factory(context: str) -> readiness.ReadinessPoller:
        source = kubectl.KubectlSource(context=context, reporter=harness_reporter)
        return readiness.ReadinessPoller(source=source, reporter=harness_reporter)

    return _factory


@pytest.fixture
def background_session(
    harness_reporter: PytestReporter,
) -> tp.Generator[tp.Callable[[commands.CommandSpec], commands.Session], None, None]:
    """Return a function for starting background commands.

    All sessions still running at the end of the test are stopped.
    """
    sessions: list[commands.Session] = []

    def _start(spec: commands.CommandSpec) -> commands.Session:
        session = commands.start(spec=spec, reporter=harness_reporter)
        sessions.append(session)
        return session

    yield _start

    for session in sessions:
        report = session.stop()
        if report is not None:
            framework_log.log_teardown_issues(
                test_name=harness_reporter.name, args=session.args, issues=report.issues
            )


@pytest.fixture
def profile(harness_reporter: PytestReporter) -> tp.Generator[str, None, None]:
    """Return a unique cluster profile name, the profile is deleted after the test."""
    profile_name = f"itest-{helpers.get_rand_str(6)}"
    yield profile_name
    cleanup.cleanup_with_logs(profile=profile_name, reporter=harness_reporter)
