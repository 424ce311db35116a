"""Conflict resolution between the local and remote copy of a user record.

Append-only collections (mistakes, archive, favorites) merge by set union,
so no element is ever lost and merging is commutative and idempotent.
Settings are per-device preferences: the local copy always wins and remote
settings never overwrite them. The direction of the follow-up write is
decided by the store-assigned ``last_updated`` timestamps.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

from core.models import UserRecord
from core.record_store import SERVER_TIMESTAMP

log = logging.getLogger("quizsync.merge")

APPEND_ONLY_FIELDS = ("mistakes", "archive", "favorites")


class MergeAction(Enum):
    """Which side needs the merged record written to it."""

    PUSH_REMOTE = "push_remote"
    WRITE_LOCAL = "write_local"
    NONE = "none"


@dataclass
class MergeResult:
    """Outcome of reconciling two copies of a record."""

    record: UserRecord
    action: MergeAction
    added_locally: int = 0
    added_remotely: int = 0


def union_ids(*collections: Iterable | None) -> set:
    """Union of any number of id collections, ignoring missing ones."""
    result: set = set()
    for collection in collections:
        if collection:
            result.update(collection)
    return result


def merge_records(local: UserRecord, remote: UserRecord) -> MergeResult:
    """Reconcile a local and a remote snapshot of the same user record.

    Args:
        local: The on-device copy
        remote: The copy received from the remote store

    Returns:
        MergeResult with the merged record and the write to issue
    """
    merged_sets = {
        name: union_ids(getattr(local, name), getattr(remote, name))
        for name in APPEND_ONLY_FIELDS
    }
    added_locally = sum(
        len(merged_sets[n] - getattr(local, n)) for n in APPEND_ONLY_FIELDS
    )
    added_remotely = sum(
        len(merged_sets[n] - getattr(remote, n)) for n in APPEND_ONLY_FIELDS
    )

    record = local.model_copy(
        update={
            **merged_sets,
            "settings": dict(local.settings),
            "owner_id": local.owner_id or remote.owner_id,
            "last_updated": max(local.last_updated, remote.last_updated),
        }
    )

    if remote.last_updated < local.last_updated:
        action = MergeAction.PUSH_REMOTE
    elif remote.last_updated > local.last_updated:
        action = MergeAction.WRITE_LOCAL
    else:
        action = MergeAction.NONE

    log.debug(
        f"Merged record: action={action.value}, "
        f"new_locally={added_locally}, new_remotely={added_remotely}"
    )
    return MergeResult(
        record=record,
        action=action,
        added_locally=added_locally,
        added_remotely=added_remotely,
    )


def same_content(a: UserRecord, b: UserRecord) -> bool:
    """True if both records hold the same append-only elements."""
    return all(getattr(a, n) == getattr(b, n) for n in APPEND_ONLY_FIELDS)


def record_payload(record: UserRecord, app_id: str) -> dict[str, Any]:
    """Field-merge payload for a routine save to ``users/{id}``.

    Settings stay on the device and are not part of the payload.
    """
    doc = record.model_dump(by_alias=True)
    payload = {
        "mistakes": doc["mistakes"],
        "archive": doc["archive"],
        "fav": doc["fav"],
        "last_updated": SERVER_TIMESTAMP,
        "app_id": app_id,
    }
    if record.owner_id:
        payload["telegram_id"] = record.owner_id
    if record.user_name:
        payload["user_name"] = record.user_name
    if record.client_timestamp is not None:
        payload["client_timestamp"] = record.client_timestamp
    return payload
