import contextlib
import logging
import typing as tp

from cluster_harness.utils import configuration

# Use dummy locking if not executing with multiple workers.
# When running with multiple workers, writes to files shared by all workers (like the scheduling
# log) need to be locked to single worker.
if configuration.IS_XDIST:
    from filelock import FileLock

    # Suppress messages from filelock
    logging.getLogger("filelock").setLevel(logging.WARNING)

    FileLockIfXdist: tp.Any = FileLock
else:
    FileLockIfXdist = contextlib.nullcontext
