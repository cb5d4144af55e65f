"""Shared fixtures for engine tests."""

import os
import sys
import tempfile
from typing import Any, Optional

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from recordflow.core.config import EngineConfig
from recordflow.core.models import (
    ActionKind,
    ActionSpec,
    ApprovalProcessDefinition,
    ApprovalStepDefinition,
    ApproverType,
    AutomationDefinition,
    DefinitionKind,
    TriggerType,
)
from recordflow.core.state import StateManager
from recordflow.orchestrator.pipeline import AutomationEngine
from recordflow.rules.actions import ActionContext, ActionHandler, ActionResult


HOUR = 3600.0


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, hours: float = 0, seconds: float = 0) -> None:
        self.now += hours * HOUR + seconds


class RecordingHandler(ActionHandler):
    """Records every call; can be told to fail."""

    def __init__(
        self,
        kind: ActionKind,
        fail: Optional[str] = None,
        output: Optional[dict[str, Any]] = None,
    ):
        self.kind = kind
        self.fail = fail  # None, "fatal" or "recoverable"
        self.output = output or {}
        self.calls: list[tuple[dict[str, Any], ActionContext]] = []
        self.previews: list[dict[str, Any]] = []

    async def apply(self, payload: dict[str, Any], context: ActionContext) -> ActionResult:
        self.calls.append((payload, context))
        if self.fail:
            return ActionResult(success=False, error=f"{self.fail} failure", fatal=self.fail == "fatal")
        return ActionResult(success=True, output=dict(self.output))

    async def preview(self, payload: dict[str, Any], context: ActionContext) -> str:
        self.previews.append(payload)
        return f"would {self.kind.value} {sorted(payload.items())}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def state():
    """Create a temporary state manager."""
    with tempfile.TemporaryDirectory() as tmpdir:
        manager = StateManager(os.path.join(tmpdir, "test_state.db"))
        await manager.initialize()
        yield manager
        await manager.close()


@pytest.fixture
def engine_config():
    config = EngineConfig()
    config.sweeper.enabled = False
    config.schedule.enabled = False
    return config


@pytest.fixture
async def engine(state, clock, engine_config):
    engine = AutomationEngine(state, engine_config, clock=clock)
    yield engine
    await engine.stop()


@pytest.fixture
async def directory(state):
    """A small org: two managers, two admins, agents reporting to mgr_1."""
    await state.upsert_user("mgr_1", role="manager_role", email="mgr1@example.com")
    await state.upsert_user("mgr_2", role="manager_role")
    await state.upsert_user("admin_1", role="admin_role", email="admin1@example.com")
    await state.upsert_user("admin_2", role="admin_role")
    await state.upsert_user("agent_1", role="crm_agent", manager_id="mgr_1", email="agent1@example.com")
    await state.upsert_user("agent_2", role="crm_agent", manager_id="mgr_1")
    await state.upsert_user("former", role="manager_role", is_active=False)
    return state


def workflow(
    id: str,
    trigger_type: TriggerType = TriggerType.ON_CREATE,
    actions: Optional[list] = None,
    priority: int = 0,
    module_id: str = "deals",
    **kwargs,
) -> AutomationDefinition:
    return AutomationDefinition(
        id=id,
        module_id=module_id,
        name=id,
        kind=DefinitionKind.WORKFLOW,
        trigger_type=trigger_type,
        priority=priority,
        actions=[a if isinstance(a, ActionSpec) else ActionSpec.from_dict(a) for a in actions or []],
        **kwargs,
    )


def approval_process(
    id: str,
    steps: list[dict[str, Any]],
    module_id: str = "deals",
    **kwargs,
) -> ApprovalProcessDefinition:
    for key in ("on_approve_actions", "on_reject_actions"):
        if key in kwargs:
            kwargs[key] = [ActionSpec.from_dict(a) for a in kwargs[key]]
    return ApprovalProcessDefinition(
        id=id,
        module_id=module_id,
        name=id,
        steps=[ApprovalStepDefinition.from_dict(s) for s in steps],
        **kwargs,
    )


def role_step(role: str, **kwargs) -> dict[str, Any]:
    return {"type": ApproverType.ROLE.value, "value": role, **kwargs}
