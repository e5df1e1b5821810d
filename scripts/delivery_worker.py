from __future__ import annotations

from arq import run_worker

from flockcast.core.logging import configure_logging
from flockcast.workers.delivery_worker import WorkerSettings


def main() -> None:
    # Equivalent to `arq flockcast.workers.delivery_worker.WorkerSettings`.
    configure_logging()
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
