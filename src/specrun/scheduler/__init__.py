"""Spec scheduler: dependency graph, worker pool, retries and convergence.

A batch is a set of markdown specs. Dependencies declared in each spec
split the batch into topological levels; a level runs on a bounded thread
pool, each spec through a CLI agent subprocess with retry of transient
failures. A failed spec blocks its dependents and nothing else. The
convergence loop audits the codebase after a batch, turns the gaps into new
specs and runs them as fix batches until the audit comes back clean or the
round budget runs out.
"""

from specrun.scheduler.convergence import ConvergenceLoop
from specrun.scheduler.graph import DependencyGraph
from specrun.scheduler.messages import SchedulerMessageHandler, parse_request
from specrun.scheduler.pool import BatchOptions, WorkerPool
from specrun.scheduler.retry import RetryPolicy

__all__ = [
    "BatchOptions",
    "ConvergenceLoop",
    "DependencyGraph",
    "RetryPolicy",
    "SchedulerMessageHandler",
    "WorkerPool",
    "parse_request",
]
