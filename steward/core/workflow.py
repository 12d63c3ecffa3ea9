"""Linear workflow engine with durable suspend/resume.

A workflow is an ordered list of steps; each step's validated output is the
next step's input. A step may suspend by calling ctx.suspend(). The engine
then persists an explicit continuation (WorkflowRun: the suspended step id
plus all step outputs so far) and returns. Nothing stays in memory, so
resume() may run later in any process that opens the same database.

Suspension is decided by the step from its inputs alone: a step entered
without resume data suspends every time, so a retried dispatch never
double-suspends or skips ahead.
"""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, NoReturn

from pydantic import BaseModel, ValidationError

from steward.core.models import RunStatus, WorkflowRun
from steward.core.state import Database, Event, EventType

logger = logging.getLogger(__name__)


class WorkflowError(Exception):
    """Workflow misuse: unknown run, bad resume payload, run not suspended."""

    pass


class StepSuspended(Exception):
    """Raised by StepContext.suspend() to pause the run at the current step."""

    def __init__(self, payload: dict[str, Any] | None = None):
        super().__init__("step suspended")
        self.payload = payload or {}


@dataclass
class StepContext:
    """What a step sees while it executes."""

    run_id: str
    step_id: str
    input_data: Any
    resume_data: Any = None
    db: Database | None = None

    def suspend(self, payload: dict[str, Any] | None = None) -> NoReturn:
        raise StepSuspended(payload)

    def record(self, event_type: EventType, payload: dict[str, Any] | None = None) -> None:
        """Append a step-level event (e.g. approval requested) to the run's log."""
        if self.db is None:
            return
        self.db.append_event(
            Event(
                run_id=self.run_id,
                event_type=event_type,
                step_id=self.step_id,
                payload=payload or {},
            )
        )


@dataclass
class WorkflowStep:
    """A single step: typed input/output, optional typed resume payload."""

    id: str
    description: str
    input_model: type[BaseModel]
    output_model: type[BaseModel]
    execute: Callable[[StepContext], BaseModel | dict[str, Any]]
    resume_model: type[BaseModel] | None = None


@dataclass
class Workflow:
    """An ordered pipeline of steps."""

    id: str
    description: str
    input_model: type[BaseModel]
    output_model: type[BaseModel]
    steps: list[WorkflowStep] = field(default_factory=list)

    def then(self, step: WorkflowStep) -> "Workflow":
        self.steps.append(step)
        return self

    def step_index(self, step_id: str) -> int:
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return index
        raise WorkflowError(f"Workflow '{self.id}' has no step '{step_id}'")


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


class WorkflowEngine:
    """Run, suspend and resume workflows against a Database."""

    def __init__(self, db: Database, workflows: list[Workflow] | None = None):
        self.db = db
        self._workflows: dict[str, Workflow] = {}
        for workflow in workflows or []:
            self.register(workflow)

    def register(self, workflow: Workflow) -> None:
        if not workflow.steps:
            raise WorkflowError(f"Workflow '{workflow.id}' has no steps")
        self._workflows[workflow.id] = workflow

    def get_workflow(self, workflow_id: str) -> Workflow:
        try:
            return self._workflows[workflow_id]
        except KeyError:
            raise WorkflowError(f"Workflow '{workflow_id}' is not registered") from None

    def get_run(self, run_id: str) -> WorkflowRun:
        run = self.db.get_run(run_id)
        if run is None:
            raise WorkflowError(f"Run '{run_id}' not found")
        return run

    def start(
        self,
        workflow_id: str,
        input_data: dict[str, Any],
        run_id: str | None = None,
    ) -> WorkflowRun:
        """Start a new run. Returns it suspended, succeeded or failed."""
        workflow = self.get_workflow(workflow_id)
        run = WorkflowRun(
            run_id=run_id or f"run-{uuid.uuid4().hex[:12]}",
            workflow_id=workflow.id,
            current_step=workflow.steps[0].id,
            input=dict(input_data),
        )
        self.db.save_run(run)
        self.db.append_event(
            Event(run_id=run.run_id, event_type=EventType.WORKFLOW_STARTED, payload=run.input)
        )
        logger.info(f"Started run '{run.run_id}' of workflow '{workflow.id}'")

        try:
            validated = workflow.input_model.model_validate(input_data)
        except ValidationError as e:
            return self._fail(run, f"Invalid workflow input: {e}")

        return self._advance(workflow, run, _dump(validated), resume_data=None)

    def resume(
        self,
        run_id: str,
        resume_data: dict[str, Any] | None = None,
        step_id: str | None = None,
    ) -> WorkflowRun:
        """Resume a suspended run from its persisted continuation.

        Raises:
            WorkflowError: Unknown run, run not suspended, step mismatch,
                           or resume_data failing the step's resume schema.
                           The run stays suspended in every case.
        """
        run = self.get_run(run_id)
        if run.status != RunStatus.SUSPENDED:
            raise WorkflowError(f"Run '{run_id}' is not suspended (status: {run.status.value})")

        workflow = self.get_workflow(run.workflow_id)
        step = workflow.steps[workflow.step_index(run.current_step or "")]
        if step_id and step_id != step.id:
            raise WorkflowError(
                f"Run '{run_id}' is suspended at '{step.id}', not '{step_id}'"
            )

        resume_model_data: dict[str, Any] | None = None
        if resume_data is not None:
            if step.resume_model is None:
                raise WorkflowError(f"Step '{step.id}' does not accept resume data")
            try:
                resume_model_data = _dump(step.resume_model.model_validate(resume_data))
            except ValidationError as e:
                raise WorkflowError(f"Invalid resume data for step '{step.id}': {e}") from e

        if not self.db.claim_suspended_run(run_id):
            raise WorkflowError(f"Run '{run_id}' was resumed concurrently")

        run.status = RunStatus.RUNNING
        try:
            self.db.append_event(
                Event(
                    run_id=run_id,
                    event_type=EventType.WORKFLOW_RESUMED,
                    step_id=step.id,
                    payload=resume_model_data or {},
                )
            )
            logger.info(f"Resuming run '{run_id}' at step '{step.id}'")

            step_input = run.suspended_input or {}
            return self._advance(workflow, run, step_input, resume_data=resume_model_data)
        except Exception as e:
            # Persistence failed mid-resume; hand the run back so it can be retried
            logger.error(f"Resume of run '{run_id}' aborted, releasing claim: {e}")
            self.db.release_claim(run_id)
            raise

    def _advance(
        self,
        workflow: Workflow,
        run: WorkflowRun,
        step_input: dict[str, Any],
        resume_data: dict[str, Any] | None,
    ) -> WorkflowRun:
        """Execute steps from run.current_step until suspension or the end."""
        index = workflow.step_index(run.current_step or workflow.steps[0].id)

        for step in workflow.steps[index:]:
            run.current_step = step.id
            try:
                output = self._execute_step(run, step, step_input, resume_data)
            except StepSuspended as s:
                return self._suspend(run, step, step_input, s.payload)
            except Exception as e:
                logger.error(f"Step '{step.id}' of run '{run.run_id}' failed: {e}")
                self.db.append_event(
                    Event(
                        run_id=run.run_id,
                        event_type=EventType.STEP_FAILED,
                        step_id=step.id,
                        payload={"error": str(e)},
                    )
                )
                return self._fail(run, f"Step '{step.id}' failed: {e}")

            run.step_outputs[step.id] = output
            self.db.append_event(
                Event(
                    run_id=run.run_id,
                    event_type=EventType.STEP_COMPLETED,
                    step_id=step.id,
                    payload=output,
                )
            )
            step_input = output
            # Resume data belongs to the suspended step only
            resume_data = None

        try:
            result = _dump(workflow.output_model.model_validate(step_input))
        except ValidationError as e:
            return self._fail(run, f"Invalid workflow output: {e}")

        run.status = RunStatus.SUCCESS
        run.current_step = None
        run.suspended_input = None
        run.suspend_payload = None
        run.result = result
        self.db.save_run(run)
        self.db.append_event(
            Event(run_id=run.run_id, event_type=EventType.WORKFLOW_COMPLETED, payload=run.result)
        )
        logger.info(f"Run '{run.run_id}' completed")
        return run

    def _execute_step(
        self,
        run: WorkflowRun,
        step: WorkflowStep,
        step_input: dict[str, Any],
        resume_data: dict[str, Any] | None,
    ) -> dict[str, Any]:
        ctx = StepContext(
            run_id=run.run_id,
            step_id=step.id,
            input_data=step.input_model.model_validate(step_input),
            resume_data=(
                step.resume_model.model_validate(resume_data)
                if step.resume_model is not None and resume_data is not None
                else None
            ),
            db=self.db,
        )
        output = step.execute(ctx)
        if isinstance(output, BaseModel):
            output = _dump(output)
        return _dump(step.output_model.model_validate(output))

    def _suspend(
        self,
        run: WorkflowRun,
        step: WorkflowStep,
        step_input: dict[str, Any],
        payload: dict[str, Any],
    ) -> WorkflowRun:
        run.status = RunStatus.SUSPENDED
        run.current_step = step.id
        run.suspended_input = step_input
        run.suspend_payload = payload
        self.db.save_run(run)
        self.db.append_event(
            Event(
                run_id=run.run_id,
                event_type=EventType.WORKFLOW_SUSPENDED,
                step_id=step.id,
                payload=payload,
            )
        )
        logger.info(f"Run '{run.run_id}' suspended at step '{step.id}'")
        return run

    def _fail(self, run: WorkflowRun, error: str) -> WorkflowRun:
        run.status = RunStatus.FAILED
        run.error = error
        self.db.save_run(run)
        self.db.append_event(
            Event(
                run_id=run.run_id,
                event_type=EventType.WORKFLOW_FAILED,
                step_id=run.current_step,
                payload={"error": error},
            )
        )
        return run
