from __future__ import annotations

from arq import run_worker

from postureguard.core.logging import configure_logging
from postureguard.workers.scan_worker import WorkerSettings


if __name__ == "__main__":
    # Same as `arq postureguard.workers.scan_worker.WorkerSettings`.
    configure_logging()
    run_worker(WorkerSettings)
