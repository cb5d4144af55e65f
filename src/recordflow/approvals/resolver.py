"""Approver resolution for approval steps."""

from typing import Any, Protocol

import structlog

from ..core.models import ApprovalStepDefinition, ApproverType
from ..core.state import StateManager


logger = structlog.get_logger()


class ApproverResolver(Protocol):
    """Turns a step definition into the user ids allowed to decide it."""

    async def resolve(self, step: ApprovalStepDefinition, record: dict[str, Any]) -> list[str]:
        ...


class DirectoryApproverResolver:
    """Resolves approvers from the users table in the state store."""

    def __init__(self, state: StateManager):
        self.state = state

    async def resolve(self, step: ApprovalStepDefinition, record: dict[str, Any]) -> list[str]:
        if step.type == ApproverType.ROLE:
            return await self.state.list_users_by_role(step.value) if step.value else []

        if step.type == ApproverType.USER:
            return await self._active([step.value])

        owner_id = record.get("owner_id")
        if step.type == ApproverType.RECORD_OWNER:
            return await self._active([owner_id])

        # MANAGER
        owner = await self.state.get_user(owner_id) if owner_id else None
        if owner is None or not owner.get("manager_id"):
            logger.info("manager_not_found", record_id=record.get("id"), owner_id=owner_id)
            return []
        return await self._active([owner["manager_id"]])

    async def _active(self, user_ids: list) -> list[str]:
        resolved = []
        for user_id in user_ids:
            if not user_id:
                continue
            user = await self.state.get_user(user_id)
            if user and user["is_active"]:
                resolved.append(user_id)
        return resolved
