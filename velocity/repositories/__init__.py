from velocity.repositories.jobs import JobsRepository, merge_job_in_tx
from velocity.repositories.references import ReferenceDataRepository

__all__ = [
    "JobsRepository",
    "ReferenceDataRepository",
    "merge_job_in_tx",
]
