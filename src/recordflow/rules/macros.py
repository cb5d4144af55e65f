"""Manually invoked, role-gated action bundles."""

from typing import Any

import structlog

from ..core.errors import AuthorizationError, ValidationError
from ..core.models import Actor, AutomationDefinition, DefinitionKind, ExecutionMode
from .actions import ExecutionReport
from .engine import WorkflowRunner


logger = structlog.get_logger()


class MacroExecutor:
    """Checks the role allow-list, then runs the macro's actions live."""

    def __init__(self, runner: WorkflowRunner):
        self.runner = runner

    async def run(
        self,
        macro: AutomationDefinition,
        record: dict[str, Any],
        actor: Actor,
    ) -> ExecutionReport:
        if macro.kind != DefinitionKind.MACRO:
            raise ValidationError(f"Definition {macro.id} is not a macro", code="not_a_macro")
        if not macro.is_enabled:
            raise ValidationError(f"Macro {macro.id} is disabled", code="definition_disabled")
        if actor.role not in macro.allowed_roles:
            logger.info("macro_denied", macro_id=macro.id, actor_id=actor.id, role=actor.role)
            raise AuthorizationError(
                f"Role {actor.role!r} may not run macro {macro.id}",
                actor_id=actor.id,
            )

        report = await self.runner.execute_definition(
            macro,
            record,
            mode=ExecutionMode.LIVE,
            source="macro",
            actor_id=actor.id,
        )
        logger.info("macro_executed", macro_id=macro.id, actor_id=actor.id, status=report.status.value)
        return report
