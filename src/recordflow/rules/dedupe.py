"""Duplicate detection for public form submissions."""

import asyncio
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from ..core.models import DedupeConfig, DedupeStrategy, Event, EventType
from ..core.state import StateManager


logger = structlog.get_logger()


@dataclass
class DedupeResult:
    """Outcome of resolving one submission.

    ``event`` is the lifecycle event to feed into the pipeline; it is None
    when a duplicate was skipped.
    """
    record: dict[str, Any]
    is_new: bool
    strategy_applied: Optional[DedupeStrategy] = None
    event: Optional[Event] = None


class DedupeResolver:
    """
    Resolves a submission to a new or existing record.

    Lookup and create run under a lock per (module, dedupe key values) so
    concurrent identical submissions cannot both create a record.
    """

    def __init__(self, state: StateManager):
        self.state = state
        self._locks: dict[tuple, list] = {}

    async def resolve(
        self,
        module_id: str,
        submission: dict[str, Any],
        config: DedupeConfig,
        created_by: Optional[str] = None,
    ) -> DedupeResult:
        keys = self._dedupe_values(submission, config)
        if keys is None:
            return await self._create(module_id, submission, created_by)

        lock_key = (module_id, tuple(sorted((k, repr(v)) for k, v in keys.items())))
        entry = self._locks.get(lock_key)
        if entry is None:
            entry = self._locks[lock_key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                return await self._resolve_locked(module_id, submission, config, keys, created_by)
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[lock_key]

    @staticmethod
    def _dedupe_values(submission: dict[str, Any], config: DedupeConfig) -> Optional[dict[str, Any]]:
        """Values of the dedupe fields, or None when dedupe does not apply."""
        if not config.enabled or not config.fields:
            return None
        values = {}
        for name in config.fields:
            value = submission.get(name)
            if value is None or value == "":
                return None
            values[name] = value
        return values

    async def _resolve_locked(
        self,
        module_id: str,
        submission: dict[str, Any],
        config: DedupeConfig,
        keys: dict[str, Any],
        created_by: Optional[str],
    ) -> DedupeResult:
        matches = await self.state.find_by_fields(module_id, keys)
        if not matches or config.strategy == DedupeStrategy.CREATE_DUPLICATE:
            result = await self._create(module_id, submission, created_by)
            if matches:
                result.strategy_applied = DedupeStrategy.CREATE_DUPLICATE
            return result

        existing = matches[0]
        logger.info(
            "dedupe_match_found",
            module_id=module_id,
            record_id=existing["id"],
            strategy=config.strategy.value,
            match_count=len(matches),
        )

        if config.strategy == DedupeStrategy.SKIP:
            return DedupeResult(record=existing, is_new=False, strategy_applied=DedupeStrategy.SKIP)

        record, written = await self.state.update_record(existing["id"], submission)
        event = Event(
            type=EventType.UPDATE,
            module_id=module_id,
            record=record,
            changed_fields=written,
            previous=existing,
            actor_id=created_by,
        )
        return DedupeResult(record=record, is_new=False, strategy_applied=DedupeStrategy.UPDATE, event=event)

    async def _create(
        self,
        module_id: str,
        submission: dict[str, Any],
        created_by: Optional[str],
    ) -> DedupeResult:
        record = await self.state.create_record(module_id, submission, created_by=created_by)
        event = Event(type=EventType.CREATE, module_id=module_id, record=record, actor_id=created_by)
        return DedupeResult(record=record, is_new=True, event=event)
