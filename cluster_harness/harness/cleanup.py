"""Status and cleanup of cluster profiles used by tests."""

import logging

from cluster_harness.harness import commands
from cluster_harness.harness import reporter as rep
from cluster_harness.utils import configuration

LOGGER = logging.getLogger(__name__)


def cluster_status(profile: str, reporter: rep.Reporter, *, cli: str = "") -> str:
    """Return the host status of a cluster profile, e.g. "Running" or "Stopped"."""
    spec = commands.CommandSpec(
        args=[cli or configuration.CLUSTER_CLI, "status", "--format={{.Host}}", "-p", profile]
    )
    try:
        result = commands.run(spec=spec, reporter=reporter)
    except commands.CommandError as exc:
        # Non-zero exit code is used also for stopped clusters
        reporter.log(f"status error: {exc.reason} (may be ok)")
        result = exc.result
    return result.stdout.decode(errors="replace").strip()


def cleanup(profile: str, reporter: rep.Reporter, *, cli: str = "") -> None:
    """Delete the cluster profile."""
    if configuration.NO_CLEANUP:
        reporter.log(f"skipping cleanup of {profile} (NO_CLEANUP is set)")
        return

    spec = commands.CommandSpec(args=[cli or configuration.CLUSTER_CLI, "delete", "-p", profile])
    try:
        commands.run(spec=spec, reporter=reporter)
    except commands.CommandError as exc:
        reporter.log(f"failed cleanup: {exc.reason}")


def cleanup_with_logs(profile: str, reporter: rep.Reporter, *, cli: str = "") -> None:
    """Collect cluster logs if the test failed, then delete the cluster profile."""
    if reporter.failed() and configuration.POSTMORTEM_LOGS:
        reporter.log(f"{profile} failed, collecting logs ...")
        spec = commands.CommandSpec(
            args=[cli or configuration.CLUSTER_CLI, "-p", profile, "logs", "--problems"]
        )
        try:
            result = commands.run(spec=spec, reporter=reporter)
        except commands.CommandError as exc:
            reporter.log(f"failed logs error: {exc.reason}")
            result = exc.result
        reporter.log(f"{profile} logs: {result.stdout.decode(errors='replace')}")

    cleanup(profile=profile, reporter=reporter, cli=cli)
