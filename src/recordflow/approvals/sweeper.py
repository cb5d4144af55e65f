"""Background timeout / auto-approve sweeper."""

import asyncio
import time
from typing import Awaitable, Callable, Optional

import structlog

from .engine import ApprovalOutcome, ApprovalProcessEngine, Clock


logger = structlog.get_logger()

OutcomeCallback = Callable[[list[ApprovalOutcome]], Awaitable[None]]


class ApprovalSweeper:
    """
    Periodically calls ``ApprovalProcessEngine.sweep``.

    ``run_once`` is the unit of work; tests drive it directly with a fake
    clock instead of starting the loop.
    """

    def __init__(
        self,
        engine: ApprovalProcessEngine,
        interval_seconds: float = 60.0,
        clock: Clock = time.time,
        on_outcomes: Optional[OutcomeCallback] = None,
    ):
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._on_outcomes = on_outcomes
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> list[ApprovalOutcome]:
        outcomes = await self.engine.sweep(self.clock())
        if outcomes:
            logger.info("approval_sweep_completed", transitioned=len(outcomes))
            if self._on_outcomes:
                await self._on_outcomes(outcomes)
        return outcomes

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("approval_sweeper_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("approval_sweeper_stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("approval_sweep_error")
