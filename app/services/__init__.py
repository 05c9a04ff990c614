"""Business logic services for the orchestration layer.

JobService is imported from app.services.job_service directly: it depends on
the step controller, which itself depends on the modules exported here.
"""

from app.services.job_lease import JobLeaseManager
from app.services.persistence import SqlPersistenceGateway

__all__ = [
    "JobLeaseManager",
    "SqlPersistenceGateway",
]
