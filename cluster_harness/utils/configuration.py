"""Test environment configuration."""

import os
import pathlib as pl

IS_XDIST = bool(os.environ.get("PYTEST_XDIST_TESTRUNUID"))

# Binary of the cluster CLI under test, e.g. a freshly built `out/minikube-linux-amd64`
CLUSTER_CLI = os.environ.get("CLUSTER_CLI") or "minikube"
KUBECTL_BIN = os.environ.get("KUBECTL_BIN") or "kubectl"

# The `none` driver runs the cluster directly on the host, so there can be only one cluster and
# test cases can't start clusters in parallel.
TEST_DRIVER = os.environ.get("TEST_DRIVER") or ""
NONE_DRIVER = TEST_DRIVER == "none"

# Minimal spacing (in seconds) between starts of concurrent clusters
START_OFFSET = float(os.environ.get("START_OFFSET") or 30)
if START_OFFSET < 0:
    msg = f"Invalid START_OFFSET '{START_OFFSET}': must be >= 0"
    raise RuntimeError(msg)

# Interval between pod status queries, and minimal uptime before pods are considered healthy
POLL_INTERVAL = float(os.environ.get("POLL_INTERVAL") or 0.5)
MIN_UPTIME = float(os.environ.get("MIN_UPTIME") or 5)
if POLL_INTERVAL <= 0:
    msg = f"Invalid POLL_INTERVAL '{POLL_INTERVAL}': must be > 0"
    raise RuntimeError(msg)

# Profiles are deleted after each test unless this is set
NO_CLEANUP = bool(os.environ.get("NO_CLEANUP"))
# Collect cluster logs when a test fails
POSTMORTEM_LOGS = (os.environ.get("NO_POSTMORTEM_LOGS") or "") == ""

# Resolve SCHEDULING_LOG
SCHEDULING_LOG: str | pl.Path = os.environ.get("SCHEDULING_LOG") or ""
if SCHEDULING_LOG:
    SCHEDULING_LOG = pl.Path(SCHEDULING_LOG).expanduser().resolve()
