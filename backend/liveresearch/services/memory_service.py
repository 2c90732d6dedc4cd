from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import Request
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from liveresearch.core.config import Settings
from liveresearch.repos.kv_repo import KeyValueRepo, VersionConflictError
from liveresearch.schemas.research import ChatTurn, ConversationMemory, CostDirection, CostEntry

logger = logging.getLogger(__name__)


class MemoryConflictError(RuntimeError):
    """Raised when a memory write loses against a concurrent writer."""


class ConversationMemoryService:
    """Durable conversation state and cost ledger on top of the key-value store.

    Every call site derives storage keys through ``memory_key`` so the
    orchestrator, the retrieval endpoint and the bridge agree on one naming
    scheme. ``candidate_keys`` adds the legacy prefixes for read-only lookups of
    records written before the scheme was unified.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        key_prefix: str = "ps-chatbot-memory",
        legacy_prefixes: Iterable[str] = (),
    ) -> None:
        self._sessionmaker = sessionmaker
        self._key_prefix = key_prefix
        self._legacy_prefixes = [item for item in legacy_prefixes if item != key_prefix]
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    def memory_key(self, memory_id: str) -> str:
        """Return the canonical storage key for a memory id."""

        return f"{self._key_prefix}-{memory_id}"

    def candidate_keys(self, memory_id: str) -> list[str]:
        """Return the canonical key followed by legacy keys, in lookup order."""

        keys = [self.memory_key(memory_id)]
        keys.extend(f"{prefix}-{memory_id}" for prefix in self._legacy_prefixes)
        keys.append(memory_id)
        return list(dict.fromkeys(keys))

    @asynccontextmanager
    async def lock(self, memory_id: str) -> AsyncIterator[None]:
        """Hold the single-writer lock guarding one conversation.

        The lock entry is dropped once no holder or waiter remains.
        """

        lock = self._locks.get(memory_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[memory_id] = lock
        self._lock_users[memory_id] = self._lock_users.get(memory_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[memory_id] - 1
            if remaining:
                self._lock_users[memory_id] = remaining
            else:
                del self._lock_users[memory_id]
                self._locks.pop(memory_id, None)

    @property
    def held_locks(self) -> int:
        """Number of conversations with a lock holder or waiter."""

        return len(self._locks)

    async def load(self, memory_id: str) -> Optional[ConversationMemory]:
        """Load a conversation, falling back to legacy keys when needed."""

        async with self._sessionmaker() as db:
            repo = KeyValueRepo(db)
            for key in self.candidate_keys(memory_id):
                found = await repo.get_json(key)
                if found is None:
                    continue
                value, version = found
                memory = self._parse(memory_id, value)
                if memory is None:
                    continue
                if key != self.memory_key(memory_id):
                    logger.info("Loaded memory %s from legacy key %s", memory_id, key)
                    # Legacy rows are never written back; first save creates the canonical key.
                    version = 0
                memory.version = version
                return memory
        return None

    async def load_or_create(self, memory_id: str) -> ConversationMemory:
        """Load a conversation or return a new empty one (not yet persisted)."""

        memory = await self.load(memory_id)
        if memory is None:
            memory = ConversationMemory(memory_id=memory_id)
        return memory

    async def save(self, memory: ConversationMemory) -> ConversationMemory:
        """Persist a conversation with an optimistic version check."""

        if not memory.persist:
            return memory
        async with self._sessionmaker() as db:
            repo = KeyValueRepo(db)
            try:
                async with db.begin():
                    memory.version = await repo.set_json(
                        self.memory_key(memory.memory_id),
                        memory.to_wire(),
                        expected_version=memory.version,
                    )
            except VersionConflictError as exc:
                raise MemoryConflictError(str(exc)) from exc
        return memory

    async def append(self, memory_id: str, turn: ChatTurn) -> ConversationMemory:
        """Append one chat turn and persist it."""

        return await self._mutate(memory_id, lambda memory: memory.chat_log.append(turn))

    async def add_cost(
        self,
        memory_id: str,
        amount_in: float,
        amount_out: float,
        stage: str = "unknown",
    ) -> ConversationMemory:
        """Record an input/output token-cost pair against a conversation."""

        def apply(memory: ConversationMemory) -> None:
            memory.cost_ledger.extend(build_cost_entries(amount_in, amount_out, stage))

        return await self._mutate(memory_id, apply)

    async def total_cost(self, memory_id: str) -> float:
        """Return the accumulated spend of a conversation."""

        memory = await self.load(memory_id)
        return memory.total_cost() if memory else 0.0

    async def _mutate(self, memory_id: str, apply) -> ConversationMemory:
        for attempt in range(3):
            memory = await self.load_or_create(memory_id)
            apply(memory)
            try:
                return await self.save(memory)
            except MemoryConflictError:
                if attempt == 2:
                    raise
                logger.info("Retrying memory write for %s after conflict", memory_id)
        raise RuntimeError("Failed to write memory after retries")

    @staticmethod
    def _parse(memory_id: str, value: object) -> Optional[ConversationMemory]:
        if not isinstance(value, dict):
            return None
        payload = dict(value)
        payload.setdefault("memoryId", memory_id)
        try:
            return ConversationMemory.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Stored memory %s is unreadable: %s", memory_id, exc)
            return None


def build_cost_entries(amount_in: float, amount_out: float, stage: str) -> list[CostEntry]:
    """Build the ledger rows for one input/output cost pair, skipping zeros."""

    entries: list[CostEntry] = []
    pairs: tuple[tuple[CostDirection, float], ...] = (("in", amount_in), ("out", amount_out))
    for direction, amount in pairs:
        if amount > 0:
            entries.append(CostEntry(direction=direction, amount=amount, stage=stage))
    return entries


def last_assistant_text(memory: ConversationMemory) -> Optional[str]:
    """Return the newest assistant message of a conversation, if any."""

    for turn in reversed(memory.chat_log):
        if turn.sender == "assistant" and turn.text:
            return turn.text
    return None


def full_cost(memory: Optional[ConversationMemory]) -> float:
    """Return total spend of a loaded conversation, zero when absent."""

    return round(memory.total_cost(), 6) if memory else 0.0


def create_memory_service(
    sessionmaker: async_sessionmaker[AsyncSession], settings: Settings
) -> ConversationMemoryService:
    """Build the memory service from settings."""

    return ConversationMemoryService(
        sessionmaker,
        key_prefix=settings.memory_key_prefix,
        legacy_prefixes=settings.parsed_legacy_prefixes(),
    )


def get_memory_service(request: Request) -> ConversationMemoryService:
    """Dependency to access the memory service from app state."""

    return request.app.state.memory_service
