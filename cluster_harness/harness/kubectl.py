"""Pod status source backed by `kubectl`."""

import json
import logging
import typing as tp

from cluster_harness.harness import commands
from cluster_harness.harness import readiness
from cluster_harness.harness import reporter as rep
from cluster_harness.utils import configuration

LOGGER = logging.getLogger(__name__)


def _parse_pod(item: dict[str, tp.Any]) -> readiness.ResourceObservation:
    metadata = item.get("metadata") or {}
    status = item.get("status") or {}
    conditions = tuple(
        readiness.ResourceCondition(
            type=c.get("type") or "",
            reason=c.get("reason") or "",
            message=c.get("message") or "",
        )
        for c in status.get("conditions") or ()
    )
    return readiness.ResourceObservation(
        name=metadata["name"],
        uid=metadata.get("uid") or "",
        phase=status.get("phase") or "",
        conditions=conditions,
    )


def parse_pod_list(raw: bytes | str) -> list[readiness.ResourceObservation]:
    """Parse output of `kubectl get po -o json`.

    Raises:
        StatusQueryError: The output is not a valid pod list.
    """
    try:
        pod_list = json.loads(raw)
        return [_parse_pod(item) for item in pod_list.get("items") or ()]
    except (ValueError, KeyError, TypeError, AttributeError) as exc:
        msg = f"Unexpected `kubectl` output: {exc}"
        raise readiness.StatusQueryError(msg) from exc


class KubectlSource:
    """Query pods of a cluster with `kubectl --context <context>`."""

    def __init__(
        self,
        context: str,
        reporter: rep.Reporter,
        *,
        kubectl: str = configuration.KUBECTL_BIN,
        query_timeout: float | None = 60,
    ) -> None:
        self.context = context
        self.reporter = reporter
        self.kubectl = kubectl
        self.query_timeout = query_timeout

    def _spec(self, *args: str, timeout: float | None = None) -> commands.CommandSpec:
        return commands.CommandSpec(
            args=[self.kubectl, "--context", self.context, *args], timeout=timeout
        )

    def list_resources(self, namespace: str, selector: str) -> list[readiness.ResourceObservation]:
        spec = self._spec(
            "get", "po", "-n", namespace, "-l", selector, "-o", "json", timeout=self.query_timeout
        )
        try:
            result = commands.run(spec=spec, reporter=self.reporter)
        except commands.CommandError as exc:
            msg = f"{exc.result.command()}: {exc.reason}"
            raise readiness.StatusQueryError(msg) from exc

        return parse_pod_list(result.stdout)

    def _log_run(self, spec: commands.CommandSpec) -> bool:
        try:
            result = commands.run(spec=spec, reporter=self.reporter)
        except commands.CommandError as exc:
            self.reporter.log(f"{exc.result.command()}: {exc.reason}")
            return False

        self.reporter.log(f"(dbg) {result.command()}:\n{result.stdout.decode(errors='replace')}")
        return True

    def dump_diagnostics(self, namespace: str, names: tp.Iterable[str]) -> None:
        """Log pod listing, and description and logs of each pod."""
        if not self._log_run(self._spec("get", "po", "-A", "--show-labels")):
            # Return now, because kubectl is hosed
            return

        for name in names:
            self._log_run(self._spec("describe", "po", name, "-n", namespace))
            self._log_run(self._spec("logs", name, "-n", namespace))
