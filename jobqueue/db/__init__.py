"""
Database module.
Contains the connection handle, models, and repository implementation.
"""

from jobqueue.db.connection import Database
from jobqueue.db.models import Base, Job
from jobqueue.db.repository import JobRepository

__all__ = [
    "Database",
    "Job",
    "Base",
    "JobRepository",
]
