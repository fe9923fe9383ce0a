"""
Durable batch jobs that run deferred generation through the gateway.
"""

from .handlers import HANDLERS, HandlerOutcome, MemoryResultSink, ResultSink, run_job
from .queue import JobQueue, JobType
from .worker import QueueWorker, TickReport

__all__ = [
    "HANDLERS",
    "HandlerOutcome",
    "JobQueue",
    "JobType",
    "MemoryResultSink",
    "QueueWorker",
    "ResultSink",
    "TickReport",
    "run_job",
]
