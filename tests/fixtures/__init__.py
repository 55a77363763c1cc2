"""
Shared test fixtures for the docmigrate library.

Usage:
    from tests.fixtures import (
        COLLECTION,
        CountingTransform,
        FailingKeysTransform,
        FlakyStore,
        make_config,
        make_rename_transform,
        seed_users,
        user_body,
        user_key,
    )
"""

from tests.fixtures.documents import (
    COLLECTION,
    CountingTransform,
    FailingKeysTransform,
    FlakyStore,
    make_config,
    make_rename_transform,
    seed_users,
    snapshot_bodies,
    user_body,
    user_key,
)

__all__ = [
    "COLLECTION",
    "CountingTransform",
    "FailingKeysTransform",
    "FlakyStore",
    "make_config",
    "make_rename_transform",
    "seed_users",
    "snapshot_bodies",
    "user_body",
    "user_key",
]
