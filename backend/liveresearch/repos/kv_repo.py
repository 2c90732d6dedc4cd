from __future__ import annotations

import json
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from liveresearch.db.models import KeyValueEntry
from liveresearch.utils.time_utils import utc_now


class VersionConflictError(RuntimeError):
    """Raised when a versioned write loses against a concurrent writer."""

    def __init__(self, key: str, expected_version: Optional[int]) -> None:
        super().__init__(f"Version conflict for key {key} (expected {expected_version})")
        self.key = key
        self.expected_version = expected_version


class KeyValueRepo:
    """Repository for versioned JSON documents keyed by string."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def get(self, key: str) -> Optional[KeyValueEntry]:
        """Fetch a raw entry by key."""

        result = await self._db.execute(select(KeyValueEntry).where(KeyValueEntry.key == key))
        return result.scalar_one_or_none()

    async def get_json(self, key: str) -> Optional[tuple[Any, int]]:
        """Return the decoded document and its version, or None when absent."""

        entry = await self.get(key)
        if not entry:
            return None
        return json.loads(entry.value_json), entry.version

    async def set_json(
        self, key: str, value: Any, expected_version: Optional[int] = None
    ) -> int:
        """Write a document and return its new version.

        ``expected_version`` of 0 means the key must not exist yet; None skips
        the check entirely.
        """

        payload = json.dumps(value, ensure_ascii=False, default=str)
        if expected_version is None:
            entry = await self.get(key)
            if entry:
                entry.value_json = payload
                entry.version += 1
                entry.updated_at = utc_now()
                await self._db.flush()
                return entry.version
            return await self._insert(key, payload, expected_version)

        if expected_version == 0:
            return await self._insert(key, payload, expected_version)

        result = await self._db.execute(
            update(KeyValueEntry)
            .where(KeyValueEntry.key == key, KeyValueEntry.version == expected_version)
            .values(value_json=payload, version=expected_version + 1, updated_at=utc_now())
        )
        if result.rowcount != 1:
            raise VersionConflictError(key, expected_version)
        return expected_version + 1

    async def _insert(self, key: str, payload: str, expected_version: Optional[int]) -> int:
        entry = KeyValueEntry(key=key, value_json=payload, version=1, updated_at=utc_now())
        self._db.add(entry)
        try:
            await self._db.flush()
        except IntegrityError as exc:
            raise VersionConflictError(key, expected_version) from exc
        return entry.version
