"""
Worker module.
Contains the polling worker and the handler registry.
"""

from jobqueue.worker.handlers import HandlerRegistry, JobHandler, create_registry
from jobqueue.worker.main import Worker, run

__all__ = ["Worker", "HandlerRegistry", "JobHandler", "create_registry", "run"]
