"""Remote job service.

Runs setup operations for network callers and persists projects and jobs
(with their captured output) in SQLite.
"""

from server.db import JobStateError, JobStore
from server.jobs import JobService, JobServiceError, LogBuffer, SubprocessRunner
from server.httpd import DEFAULT_BIND, DEFAULT_PORT, Server
from server.client import JobClient, JobClientError

__all__ = [
    "JobStore",
    "JobStateError",
    "JobService",
    "JobServiceError",
    "LogBuffer",
    "SubprocessRunner",
    "Server",
    "DEFAULT_PORT",
    "DEFAULT_BIND",
    "JobClient",
    "JobClientError",
]
