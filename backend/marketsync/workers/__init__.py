"""
Background workers for marketsync

Workers:
- job_worker_loop: claims order-sync and webhook-processing jobs and runs them
  with bounded concurrency
- cron sweep: every CRON_SWEEP_INTERVAL_SECONDS queues a full sync for every
  ACTIVE integration
"""

from marketsync.workers.job_worker_loop import (
    execute_job,
    run_cron_sweep_loop,
    run_job_worker_loop,
)

__all__ = [
    "execute_job",
    "run_cron_sweep_loop",
    "run_job_worker_loop",
]
