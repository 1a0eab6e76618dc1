# Toolsmith/core_logic/workflow.py
import logging
import re
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Literal, Optional, Protocol, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from config.settings import DEFAULT_CATEGORIES, ToolsmithSettings
from core_logic.data_models import CompileResult, DiscoverySnapshot, Limitation, Operation
from core_logic.errors import CollaboratorFailure, InputIncomplete, ProvisioningBlocked
from core_logic.output_assembler import OutputAssembler, OutputBundle, ProvisioningReport
from core_logic.provisioning import (
    SETUP_NOTES, ExecutionResult, ProvisionedState, ProvisioningPlanner, StatementPlan,
)
from core_logic.tool_compiler import ToolCompiler

workflow_logger = logging.getLogger('Toolsmith.Workflow')
workflow_logger.setLevel(logging.INFO)


class WorkflowState(str, Enum):
    COLLECTING_INPUTS = "collecting_inputs"
    DISCOVERING = "discovering"
    COMPILING = "compiling"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    PROVISIONING = "provisioning"
    ASSEMBLING = "assembling"
    DONE = "done"
    ABORTED = "aborted"


# ABORTED is reachable from every non-terminal state and is handled separately.
TRANSITIONS = {
    WorkflowState.COLLECTING_INPUTS: {WorkflowState.DISCOVERING},
    WorkflowState.DISCOVERING: {WorkflowState.COMPILING},
    WorkflowState.COMPILING: {WorkflowState.AWAITING_CONFIRMATION},
    WorkflowState.AWAITING_CONFIRMATION: {WorkflowState.COMPILING, WorkflowState.PROVISIONING, WorkflowState.ASSEMBLING},
    WorkflowState.PROVISIONING: {WorkflowState.ASSEMBLING},
    WorkflowState.ASSEMBLING: {WorkflowState.DONE},
    WorkflowState.DONE: set(),
    WorkflowState.ABORTED: set(),
}
TERMINAL_STATES = {WorkflowState.DONE, WorkflowState.ABORTED}
CANCELLABLE_STATES = {
    WorkflowState.COLLECTING_INPUTS, WorkflowState.DISCOVERING,
    WorkflowState.COMPILING, WorkflowState.AWAITING_CONFIRMATION,
}

PROMPTED_FIELDS = ["project_ref", "owner_email", "categories", "project_url"]
# Asked only alongside a round-0 prompt that is already happening.
OPTIONAL_FIELDS = ["project_label", "anon_key"]
REQUIRED_FIELDS = ["project_ref", "owner_email"]
CONFIRMATION_FIELDS = ["action", "categories", "provision", "execute", "store_tools"]

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


# --- Collaborator interfaces ---

class DiscoveryProvider(Protocol):
    def discover(self, project_ref: str) -> DiscoverySnapshot: ...


class SqlExecutor(Protocol):
    def execute(self, plan: StatementPlan) -> ExecutionResult: ...

    def current_state(self) -> ProvisionedState: ...


class OperatorPrompt(Protocol):
    def ask_missing(self, fields: List[str], context: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """Returns values for (some of) `fields`, or None when the operator declines.
        A field answered with None or an empty string is declined individually."""
        ...


# --- Typed operator responses ---

def _split_categories(value: Any) -> Any:
    if isinstance(value, str):
        return [part.strip().lower() for part in value.split(",") if part.strip()]
    return value


class WorkflowInputs(BaseModel):
    project_ref: str
    owner_email: Optional[str] = None
    project_label: Optional[str] = None
    project_url: Optional[str] = None
    anon_key: Optional[str] = None
    categories: List[Operation] = Field(default_factory=lambda: list(DEFAULT_CATEGORIES))
    tables: Optional[List[str]] = None

    @field_validator("categories", mode="before")
    @classmethod
    def _parse_categories(cls, value):
        return _split_categories(value)

    @field_validator("owner_email")
    @classmethod
    def _check_email(cls, value):
        if value is not None and not re.match(EMAIL_PATTERN, value):
            raise ValueError(f"'{value}' is not an email address")
        return value


class ConfirmationDecision(BaseModel):
    action: Literal["accept", "regenerate", "abort"] = "accept"
    categories: Optional[List[Operation]] = None
    provision: bool = False
    execute: bool = False
    store_tools: bool = False

    @field_validator("categories", mode="before")
    @classmethod
    def _parse_categories(cls, value):
        return _split_categories(value) or None


class WorkflowOutcome(BaseModel):
    state: WorkflowState
    bundle: OutputBundle
    errors: List[str] = Field(default_factory=list)
    history: List[WorkflowState] = Field(default_factory=list)

    def render(self) -> str:
        return self.bundle.render()


# --- Coordinator ---

class WorkflowCoordinator:
    """
    Drives one operator session through
    CollectingInputs -> Discovering -> Compiling -> AwaitingConfirmation
    -> [Provisioning] -> Assembling -> Done, or Aborted.

    Collaborator calls block. Results of completed stages survive an abort and
    are always assembled into the returned bundle.
    """
    def __init__(
        self,
        settings: ToolsmithSettings,
        discovery: DiscoveryProvider,
        operator: OperatorPrompt,
        executor: Optional[SqlExecutor] = None,
        compiler: Optional[ToolCompiler] = None,
        planner: Optional[ProvisioningPlanner] = None,
        assembler: Optional[OutputAssembler] = None,
    ):
        self.settings = settings
        self.discovery = discovery
        self.operator = operator
        self.executor = executor
        self.compiler = compiler or ToolCompiler(max_tools=settings.max_tools, default_limit=settings.default_page_limit)
        self.planner = planner or ProvisioningPlanner()
        self.assembler = assembler or OutputAssembler(settings.access_tokens, settings.mcp_server_name)

        self._state = WorkflowState.COLLECTING_INPUTS
        self.history: List[WorkflowState] = [self._state]
        self._cancel_requested = False
        self._dispatched = False

        self.inputs: Optional[WorkflowInputs] = None
        self.snapshot: Optional[DiscoverySnapshot] = None
        self.compiled: Optional[CompileResult] = None
        self.provisioning: Optional[ProvisioningReport] = None
        self.errors: List[str] = []
        self.extra_limitations: List[Limitation] = []

    @property
    def state(self) -> WorkflowState:
        return self._state

    def _move(self, target: WorkflowState):
        if target is WorkflowState.ABORTED:
            if self._state in TERMINAL_STATES:
                raise RuntimeError(f"Cannot abort from terminal state {self._state.value}")
        elif target not in TRANSITIONS[self._state]:
            raise RuntimeError(f"Illegal transition {self._state.value} -> {target.value}")
        workflow_logger.info(f"State: {self._state.value} -> {target.value}")
        self._state = target
        self.history.append(target)

    # --- Cancellation ---

    def request_cancel(self) -> bool:
        """Honoured before Provisioning; refused once provisioning has been dispatched."""
        if self._state in CANCELLABLE_STATES and not self._dispatched:
            workflow_logger.warning(f"Cancellation requested in state {self._state.value}.")
            self._cancel_requested = True
            return True
        if self._dispatched:
            note = "Cancellation refused: provisioning statements were already dispatched and are not rolled back."
        else:
            note = f"Cancellation refused in state {self._state.value}."
        workflow_logger.warning(note)
        self.errors.append(note)
        return False

    # --- Collaborator boundary ---

    def _invoke(self, collaborator: str, call: Callable, *args, retries: int = 0, **kwargs):
        """Calls a collaborator; any exception becomes CollaboratorFailure with its text verbatim."""
        attempts = retries + 1
        for attempt in range(attempts):
            start_time = time.time()
            try:
                result = call(*args, **kwargs)
            except Exception as e:
                error_text = str(e) or e.__class__.__name__
                workflow_logger.warning(f"{collaborator} failed on attempt {attempt}: {error_text}")
                if attempt + 1 < attempts:
                    self.errors.append(f"{collaborator} retried after failure: {error_text}")
                    continue
                raise CollaboratorFailure(collaborator, error_text) from e
            workflow_logger.info(f"{collaborator} latency: {time.time() - start_time:.2f}s")
            return result

    # --- Stages ---

    def _collect_inputs(self, provided: Union[WorkflowInputs, Dict[str, Any], None]) -> WorkflowInputs:
        if isinstance(provided, WorkflowInputs):
            provided = provided.model_dump(exclude_none=True)
        values = {k: v for k, v in (provided or {}).items() if v is not None}
        declined = set()

        for round_number in range(self.settings.max_prompt_rounds):
            fields = PROMPTED_FIELDS if round_number == 0 else REQUIRED_FIELDS
            missing = [f for f in fields if f not in values and f not in declined]
            if round_number == 0 and missing:
                missing += [f for f in OPTIONAL_FIELDS if f not in values]
            if not missing:
                break
            answer = self._invoke("operator_prompt", self.operator.ask_missing, missing)
            if answer is None:
                declined.update(missing)
                break
            for field in missing:
                if field in answer:
                    if answer[field] is None or answer[field] == "":
                        declined.add(field)
                    else:
                        values[field] = answer[field]

        absent = [f for f in REQUIRED_FIELDS if f not in values and not (f == "owner_email" and f in declined)]
        if absent:
            raise InputIncomplete(absent)
        if "owner_email" in declined:
            self.errors.append("Owner email declined; configuration versioning is unavailable.")
        values.setdefault("categories", list(self.settings.default_categories))

        try:
            return WorkflowInputs.model_validate(values)
        except ValidationError as e:
            raise InputIncomplete(".".join(str(p) for p in err["loc"]) for err in e.errors()) from e

    def _await_confirmation(self) -> ConfirmationDecision:
        context = {
            "tools": self.compiled.tools_payload(),
            "skipped": [s.model_dump(mode="json") for s in self.compiled.skipped],
        }
        last_error: Optional[ValidationError] = None
        for _ in range(self.settings.max_prompt_rounds):
            answer = self._invoke("operator_prompt", self.operator.ask_missing, list(CONFIRMATION_FIELDS), context=context)
            if answer is None:
                # Declined confirmation: keep the tools, skip provisioning.
                return ConfirmationDecision()
            try:
                return ConfirmationDecision.model_validate(answer)
            except ValidationError as e:
                workflow_logger.warning(f"Unusable confirmation answer: {e}")
                last_error = e
        raise InputIncomplete(".".join(str(p) for p in err["loc"]) for err in last_error.errors())

    def _compile_and_confirm(self) -> Optional[ConfirmationDecision]:
        categories = list(self.inputs.categories)
        regenerations = 0
        while True:
            self.compiled = self.compiler.compile(self.snapshot, categories, self.inputs.tables)
            self._move(WorkflowState.AWAITING_CONFIRMATION)
            if self._cancel_requested:
                return None
            decision = self._await_confirmation()
            if decision.action == "abort" or self._cancel_requested:
                return None
            if decision.action == "accept":
                return decision
            if regenerations >= self.settings.max_regenerations:
                self.errors.append(f"Regeneration limit of {self.settings.max_regenerations} reached; keeping the last tools JSON.")
                return decision.model_copy(update={"action": "accept"})
            regenerations += 1
            categories = list(decision.categories or categories)
            workflow_logger.info(f"Regenerating tools with categories {categories} (same snapshot).")
            self._move(WorkflowState.COMPILING)

    def _provision(self, decision: ConfirmationDecision) -> ProvisioningReport:
        notes = list(SETUP_NOTES)
        execute = decision.execute and self.executor is not None
        if decision.execute and self.executor is None:
            notes.append("No SQL executor configured; SQL returned without execution.")

        existing = None
        if execute:
            try:
                existing = self._invoke("sql_executor", self.executor.current_state)
            except CollaboratorFailure as e:
                self.provisioning = ProvisioningReport(setup_plan=self.planner.plan_setup(), notes=notes + [e.error_text])
                raise

        report = ProvisioningReport(setup_plan=self.planner.plan_setup(execute=execute, existing=existing), notes=notes)
        self.provisioning = report
        if execute:
            self._dispatched = True
            try:
                report.setup_result = self._invoke("sql_executor", self.executor.execute, report.setup_plan)
            except CollaboratorFailure as e:
                report.setup_result = ExecutionResult(succeeded=False, error=e.error_text)
                raise

        if decision.store_tools:
            self._plan_insert(report, execute)
        return report

    def _plan_insert(self, report: ProvisioningReport, execute: bool):
        if not self.inputs.owner_email:
            report.notes.append("Owner email was declined; configuration insert skipped.")
            return
        try:
            report.insert_plan = self.planner.plan_versioned_insert(
                self.inputs.owner_email, self.compiled.tools, self.inputs.project_label,
                setup_result=report.setup_result, execute=execute,
            )
        except ProvisioningBlocked as e:
            workflow_logger.warning(f"Configuration insert blocked: {e}")
            report.notes.append(str(e))
            return
        if execute:
            try:
                report.insert_result = self._invoke("sql_executor", self.executor.execute, report.insert_plan)
            except CollaboratorFailure as e:
                report.insert_result = ExecutionResult(succeeded=False, error=e.error_text)
                raise

    def _assemble(self) -> OutputBundle:
        return self.assembler.assemble(
            self.snapshot,
            self.compiled,
            project_url=self.inputs.project_url if self.inputs else None,
            anon_key=self.inputs.anon_key if self.inputs else None,
            provisioning=self.provisioning,
            extra_limitations=self.extra_limitations,
        )

    def _outcome(self, bundle: OutputBundle) -> WorkflowOutcome:
        return WorkflowOutcome(state=self._state, bundle=bundle, errors=list(self.errors), history=list(self.history))

    def _abort(self, reason: str, tool: str = "workflow") -> WorkflowOutcome:
        workflow_logger.error(f"Workflow aborted in state {self._state.value}: {reason}")
        self.errors.append(reason)
        self.extra_limitations.append(Limitation(tool=tool, error=reason))
        self._move(WorkflowState.ABORTED)
        return self._outcome(self._assemble())

    def run(self, inputs: Union[WorkflowInputs, Dict[str, Any], None] = None) -> WorkflowOutcome:
        if self._state is not WorkflowState.COLLECTING_INPUTS:
            raise RuntimeError("A coordinator runs a single session; create a new one.")

        try:
            self.inputs = self._collect_inputs(inputs)
            if self._cancel_requested:
                return self._abort("Cancelled by operator during input collection.")

            self._move(WorkflowState.DISCOVERING)
            try:
                self.snapshot = self._invoke(
                    "discovery", self.discovery.discover, self.inputs.project_ref,
                    retries=self.settings.max_collaborator_retries,
                )
            except CollaboratorFailure as e:
                return self._abort(e.error_text, tool="discovery")
            if self._cancel_requested:
                return self._abort("Cancelled by operator after discovery.")

            self._move(WorkflowState.COMPILING)
            decision = self._compile_and_confirm()
            if decision is None:
                return self._abort("Aborted by operator before provisioning.")

            if decision.provision:
                self._move(WorkflowState.PROVISIONING)
                self.provisioning = self._provision(decision)
            self._move(WorkflowState.ASSEMBLING)
            bundle = self._assemble()
            self._move(WorkflowState.DONE)
            return self._outcome(bundle)

        except InputIncomplete as e:
            return self._abort(str(e))
        except CollaboratorFailure as e:
            return self._abort(str(e), tool=e.collaborator)
