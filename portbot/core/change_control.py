"""Change-control orchestration: build, submit, approve and start a workflow."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..cvp.client import ControlPlaneClient
from ..cvp.models import Approval, ChangeAction, ChangeStage, ChangeWorkflow, StartChange
from ..errors import AuthError, SerializationError, UpstreamError
from ..utils.logging import AuditLogger, get_logger

logger = get_logger(__name__)


class ChangeState(str, Enum):
    """Lifecycle of a change control. Transitions only move forward."""

    BUILT = "built"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    EXECUTING = "executing"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS: dict[ChangeState, tuple[ChangeState, ...]] = {
    ChangeState.BUILT: (ChangeState.SUBMITTED,),
    ChangeState.SUBMITTED: (ChangeState.APPROVED,),
    ChangeState.APPROVED: (ChangeState.EXECUTING,),
    ChangeState.EXECUTING: (ChangeState.DONE, ChangeState.FAILED),
    ChangeState.DONE: (),
    ChangeState.FAILED: (),
}


@dataclass
class ChangeRecord:
    """A workflow plus what is known about its progress."""

    workflow: ChangeWorkflow
    state: ChangeState = ChangeState.BUILT
    failed_step: str | None = None
    error: str | None = None
    history: list[ChangeState] = field(default_factory=lambda: [ChangeState.BUILT])

    @property
    def workflow_id(self) -> str:
        return self.workflow.id

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.state in (ChangeState.EXECUTING, ChangeState.DONE)

    @property
    def orphaned(self) -> bool:
        """Submitted to the control plane but never started."""
        return self.error is not None and self.state in (ChangeState.SUBMITTED, ChangeState.APPROVED)

    def advance(self, new_state: ChangeState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise ValueError(f"Illegal change-control transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)


def utc_timestamp() -> str:
    """RFC 3339 UTC timestamp with a trailing Z, as AddApproval expects."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class ChangeControlOrchestrator:
    """
    Drives one workflow through Update -> AddApproval -> Start.

    Steps run strictly in order, each a single remote call. The first failure
    stops the pipeline and the record keeps the last state that succeeded;
    nothing is rolled back. The orchestrator keeps no state between
    invocations beyond generating fresh ids.
    """

    def __init__(
        self,
        client: ControlPlaneClient,
        audit_logger: AuditLogger | None = None,
        name_prefix: str = "portbot",
    ) -> None:
        self._client = client
        self._audit = audit_logger
        self._name_prefix = name_prefix

    def build(
        self,
        action_name: str,
        stage_label: str,
        args: dict[str, str],
        name: str | None = None,
    ) -> ChangeRecord:
        """Wrap one action into a fresh single-stage workflow."""
        stage = ChangeStage(name=stage_label, action=ChangeAction(name=action_name, args=dict(args)))
        workflow = ChangeWorkflow(
            name=name or f"{self._name_prefix} {action_name} {' '.join(str(v) for v in args.values())}".strip(),
            stages=(stage,),
        )
        logger.info("Built change control", workflow_id=workflow.id, action=action_name, args=args)
        return ChangeRecord(workflow=workflow)

    async def submit(self, record: ChangeRecord) -> None:
        document = record.workflow.to_document()
        await self._client.update_change_control(document)
        self._transition(record, ChangeState.SUBMITTED)

    async def approve(self, record: ChangeRecord, timestamp: str) -> None:
        await self._client.approve_change_control(Approval(cc_id=record.workflow_id, cc_timestamp=timestamp))
        self._transition(record, ChangeState.APPROVED)

    async def execute(self, record: ChangeRecord) -> None:
        await self._client.start_change_control(StartChange(cc_id=record.workflow_id))
        self._transition(record, ChangeState.EXECUTING)

    def complete(self, record: ChangeRecord, succeeded: bool) -> None:
        """Record a device-level outcome learned outside this pipeline."""
        self._transition(record, ChangeState.DONE if succeeded else ChangeState.FAILED)

    async def run(
        self,
        action_name: str,
        stage_label: str,
        args: dict[str, str],
        timestamp: str | None = None,
    ) -> ChangeRecord:
        """
        Build the workflow and push it through submit, approve and execute.

        Returns the record in every case. When a step fails, ``failed_step``
        and ``error`` are set and the state is the last one reached.
        """
        record = self.build(action_name, stage_label, args)
        steps: list[tuple[str, Any]] = [
            ("submit", lambda: self.submit(record)),
            ("approve", lambda: self.approve(record, timestamp or utc_timestamp())),
            ("execute", lambda: self.execute(record)),
        ]
        for step_name, step in steps:
            try:
                await step()
            except (UpstreamError, AuthError, SerializationError) as e:
                record.failed_step = step_name
                record.error = str(e)
                logger.error(
                    "Change-control step failed",
                    workflow_id=record.workflow_id,
                    step=step_name,
                    state=record.state.value,
                    orphaned=record.orphaned,
                    error=str(e),
                )
                if self._audit:
                    self._audit.change_failed(record.workflow_id, step_name, str(e), record.orphaned)
                break
        return record

    def _transition(self, record: ChangeRecord, new_state: ChangeState) -> None:
        old_state = record.state
        record.advance(new_state)
        logger.info(
            "Change-control state changed",
            workflow_id=record.workflow_id,
            from_state=old_state.value,
            to_state=new_state.value,
        )
        if self._audit:
            self._audit.change_transition(record.workflow_id, old_state.value, new_state.value)
