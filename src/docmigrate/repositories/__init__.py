"""
Persistence for the engine's own records.

All records live in administrative collections of the document store,
separate from application data.
"""

from docmigrate.repositories.backups import (
    BACKUPS_COLLECTION,
    MANIFESTS_COLLECTION,
    BackupStore,
)
from docmigrate.repositories.checkpoints import (
    CHECKPOINTS_COLLECTION,
    CheckpointStore,
    DocumentCheckpointStore,
    checkpoint_key,
)
from docmigrate.repositories.jobs import (
    CONTROL_COLLECTION,
    JOBS_COLLECTION,
    ROLLBACKS_COLLECTION,
    DocumentJobRepository,
    JobRepository,
)

ADMIN_COLLECTIONS = frozenset(
    {
        JOBS_COLLECTION,
        CONTROL_COLLECTION,
        ROLLBACKS_COLLECTION,
        CHECKPOINTS_COLLECTION,
        BACKUPS_COLLECTION,
        MANIFESTS_COLLECTION,
    }
)

__all__ = [
    "ADMIN_COLLECTIONS",
    "BACKUPS_COLLECTION",
    "MANIFESTS_COLLECTION",
    "CHECKPOINTS_COLLECTION",
    "CONTROL_COLLECTION",
    "JOBS_COLLECTION",
    "ROLLBACKS_COLLECTION",
    "BackupStore",
    "CheckpointStore",
    "DocumentCheckpointStore",
    "DocumentJobRepository",
    "JobRepository",
    "checkpoint_key",
]
