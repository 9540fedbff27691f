"""
Repository - keyed persistence for executions and coordination records.

A Repository stores one record per id and supports get/put/delete and
list with equality filters over the serialized record (``status``,
``loop_id``, ``collaborator_id`` ...).

Records are stored in serialized form and rebuilt on every read, so callers
always receive a private copy. Mutating a record has no effect until it is
written back with ``put``.

Storage backends:
- In-memory (for testing and single-process use)
- File-based: one JSON file per record
"""

import copy
import json
import os
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Generic, Optional, TypeVar

from loopctl.schemas import AgentSet, Collaborator, Execution, MergeRequest, Reservation


T = TypeVar("T")


def generate_ulid() -> str:
    """
    Generate a ULID (Universally Unique Lexicographically Sortable Identifier).

    ULIDs are 26 characters, encoding:
    - 48 bits of timestamp (milliseconds since Unix epoch)
    - 80 bits of randomness
    """
    # Crockford's Base32 alphabet (excludes I, L, O, U)
    alphabet = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

    timestamp_ms = int(time.time() * 1000)
    timestamp_chars = []
    for _ in range(10):
        timestamp_chars.append(alphabet[timestamp_ms & 0x1F])
        timestamp_ms >>= 5
    timestamp_part = "".join(reversed(timestamp_chars))

    random_part = "".join(random.choice(alphabet) for _ in range(16))

    return timestamp_part + random_part


def _matches(data: dict[str, Any], filters: dict[str, Any]) -> bool:
    """Equality filter over serialized fields. None-valued filters are ignored."""
    for key, expected in filters.items():
        if expected is None:
            continue
        if isinstance(expected, Enum):
            expected = expected.value
        if data.get(key) != expected:
            return False
    return True


class Repository(ABC, Generic[T]):
    """
    Abstract base class for record storage.

    Implementations must provide methods to:
    - Retrieve a record by id
    - Create or replace a record
    - Delete a record
    - List records matching equality filters
    """

    def __init__(self, record_cls: type, key_field: str):
        """
        Args:
            record_cls: Record type exposing ``to_dict`` / ``from_dict``
            key_field: Name of the attribute holding the record id
        """
        self._record_cls = record_cls
        self._key_field = key_field

    def key_of(self, record: T) -> str:
        return getattr(record, self._key_field)

    def _decode(self, data: dict[str, Any]) -> T:
        return self._record_cls.from_dict(data)

    @abstractmethod
    def get(self, record_id: str) -> Optional[T]:
        """
        Retrieve a record by id.

        Args:
            record_id: The record id

        Returns:
            A fresh copy of the record if found, None otherwise
        """
        pass

    @abstractmethod
    def put(self, record: T) -> None:
        """
        Create or replace a record.

        Args:
            record: The record to store, keyed by its id field
        """
        pass

    @abstractmethod
    def delete(self, record_id: str) -> bool:
        """
        Delete a record.

        Args:
            record_id: The record id

        Returns:
            True if a record was deleted, False if none existed
        """
        pass

    @abstractmethod
    def list(self, **filters: Any) -> list[T]:
        """
        List records whose serialized fields equal the given filters.

        Args:
            **filters: Field name to expected value; None values are ignored

        Returns:
            Matching records ordered by id
        """
        pass


class InMemoryRepository(Repository[T]):
    """
    In-memory implementation of Repository.

    All data is lost when the instance is garbage collected.
    """

    def __init__(self, record_cls: type, key_field: str):
        super().__init__(record_cls, key_field)
        self._records: dict[str, dict[str, Any]] = {}

    def get(self, record_id: str) -> Optional[T]:
        data = self._records.get(record_id)
        if data is None:
            return None
        return self._decode(copy.deepcopy(data))

    def put(self, record: T) -> None:
        self._records[self.key_of(record)] = copy.deepcopy(record.to_dict())

    def delete(self, record_id: str) -> bool:
        return self._records.pop(record_id, None) is not None

    def list(self, **filters: Any) -> list[T]:
        return [
            self._decode(copy.deepcopy(self._records[key]))
            for key in sorted(self._records)
            if _matches(self._records[key], filters)
        ]

    def clear(self) -> None:
        """Clear all stored data (for testing)."""
        self._records.clear()


class FileRepository(Repository[T]):
    """
    File-based implementation of Repository.

    Stores one JSON file per record:
        store_dir/
            {collection}/
                {record_id}.json

    Writes go to a temporary file that is then renamed over the target, so
    a crash mid-write never leaves a truncated record behind.
    """

    def __init__(self, store_dir: Path | str, collection: str, record_cls: type, key_field: str):
        super().__init__(record_cls, key_field)
        self._dir = Path(store_dir) / collection
        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._dir

    def _path(self, record_id: str) -> Path:
        return self._dir / f"{record_id}.json"

    def _read(self, path: Path) -> dict[str, Any]:
        with open(path) as f:
            return json.load(f)

    def get(self, record_id: str) -> Optional[T]:
        path = self._path(record_id)
        if not path.exists():
            return None
        return self._decode(self._read(path))

    def put(self, record: T) -> None:
        path = self._path(self.key_of(record))
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w") as f:
            json.dump(record.to_dict(), f, indent=2)
        os.replace(tmp_path, path)

    def delete(self, record_id: str) -> bool:
        path = self._path(record_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def list(self, **filters: Any) -> list[T]:
        records = []
        for path in sorted(self._dir.glob("*.json")):
            data = self._read(path)
            if _matches(data, filters):
                records.append(self._decode(data))
        return records


@dataclass
class Repositories:
    """The set of repositories the engine and coordinator are wired with."""
    executions: Repository[Execution]
    reservations: Repository[Reservation]
    merge_requests: Repository[MergeRequest]
    collaborators: Repository[Collaborator]
    agent_sets: Repository[AgentSet]


_COLLECTIONS: dict[str, tuple[type, str]] = {
    "executions": (Execution, "execution_id"),
    "reservations": (Reservation, "reservation_id"),
    "merge_requests": (MergeRequest, "merge_request_id"),
    "collaborators": (Collaborator, "collaborator_id"),
    "agent_sets": (AgentSet, "agent_set_id"),
}


def create_repositories(store_dir: Optional[Path | str] = None) -> Repositories:
    """
    Create the full repository set.

    Args:
        store_dir: Directory for file-backed storage. None selects in-memory
            repositories.

    Returns:
        Repositories for executions and coordination records
    """
    repos: dict[str, Repository] = {}
    for collection, (record_cls, key_field) in _COLLECTIONS.items():
        if store_dir is None:
            repos[collection] = InMemoryRepository(record_cls, key_field)
        else:
            repos[collection] = FileRepository(store_dir, collection, record_cls, key_field)
    return Repositories(**repos)
