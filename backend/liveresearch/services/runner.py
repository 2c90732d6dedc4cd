from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Optional, Protocol

from fastapi import Request

from liveresearch.schemas.research import ConversationMemory
from liveresearch.services.context import RunContext
from liveresearch.services.orchestrator import TurnRequest

logger = logging.getLogger(__name__)


class TurnRunner(Protocol):
    """Anything able to execute one conversational turn."""

    async def run_turn(self, request: TurnRequest, ctx: RunContext) -> ConversationMemory:
        """Run the turn to completion."""


@dataclass
class RunHandle:
    """Track one background turn and its completion signal."""

    request: TurnRequest
    ctx: RunContext
    task: Optional[asyncio.Task] = None
    done: asyncio.Event = field(default_factory=asyncio.Event)


class RunnerManager:
    """Manage background turn tasks keyed by memory id and client id."""

    def __init__(self, default_runner: TurnRunner, finished_limit: int = 1024) -> None:
        self._default_runner = default_runner
        self._active: set[asyncio.Task] = set()
        self._latest: dict[str, RunHandle] = {}
        # Memory ids of recently finished turns, oldest first.
        self._finished: OrderedDict[str, None] = OrderedDict()
        self._finished_limit = finished_limit
        self._lock = asyncio.Lock()

    @property
    def active_turns(self) -> int:
        return len(self._latest)

    async def start_turn(
        self, request: TurnRequest, runner: Optional[TurnRunner] = None
    ) -> RunHandle:
        """Schedule a turn and return its handle immediately."""

        ctx = RunContext(
            memory_id=request.memory_id,
            client_id=request.client_id,
            silent=request.silent,
        )
        handle = RunHandle(request=request, ctx=ctx)
        async with self._lock:
            handle.task = asyncio.create_task(self._run(handle, runner or self._default_runner))
            self._active.add(handle.task)
            self._latest[request.memory_id] = handle
        return handle

    async def wait_for_completion(self, memory_id: str, timeout: float) -> bool:
        """Wait for the latest turn of a conversation.

        Returns True at once when that turn already finished, False on timeout
        or when no turn was started for the id.
        """

        handle = self._latest.get(memory_id)
        if handle is None:
            return memory_id in self._finished
        try:
            await asyncio.wait_for(handle.done.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def is_running(self, memory_id: str) -> bool:
        handle = self._latest.get(memory_id)
        return bool(handle and not handle.done.is_set())

    async def cancel_client(self, client_id: str) -> int:
        """Cancel every unfinished turn started for a client connection."""

        async with self._lock:
            handles = [
                handle
                for handle in self._latest.values()
                if handle.ctx.client_id == client_id and not handle.done.is_set()
            ]
        for handle in handles:
            handle.ctx.cancel()
        return len(handles)

    async def shutdown(self) -> None:
        """Cancel all active turn tasks."""

        async with self._lock:
            tasks = list(self._active)
            self._active.clear()
            for handle in self._latest.values():
                handle.ctx.cancel()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, handle: RunHandle, runner: TurnRunner) -> None:
        try:
            await runner.run_turn(handle.request, handle.ctx)
        except asyncio.CancelledError:
            logger.info("Turn task for %s cancelled", handle.request.memory_id)
        except Exception:  # noqa: BLE001
            logger.exception("Turn task for %s failed", handle.request.memory_id)
        finally:
            handle.done.set()
            if handle.task is not None:
                self._active.discard(handle.task)
            self._forget(handle)

    def _forget(self, handle: RunHandle) -> None:
        memory_id = handle.request.memory_id
        if self._latest.get(memory_id) is handle:
            del self._latest[memory_id]
        self._finished[memory_id] = None
        self._finished.move_to_end(memory_id)
        while len(self._finished) > self._finished_limit:
            self._finished.popitem(last=False)


def get_runner_manager(request: Request) -> RunnerManager:
    """Dependency to access the app runner manager."""

    return request.app.state.runner_manager
