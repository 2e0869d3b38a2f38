# machine.py
# Execution state machine for one session.
#
#   initialized → running → {paused, completed, error}
#   paused      → running            (step_* / continue)
#   any         → initialized        (reset)
#
# "running" only exists inside a single call: every step_over ends paused
# (or completed / error), and continue keeps running until a breakpoint,
# completion, error, a pause request or the step ceiling.
#
# The machine holds no state of its own. Everything lives on the Session,
# so a fresh ExecutionMachine can be built for every command.

import copy
from typing import Any, Callable

from entran import config, display
from entran.errors import ExecutionError, RiskBlockedError, StepLimitExceeded
from entran.evaluator import StepEvaluator
from entran.models import (
    CurrentStep,
    ErrorState,
    ExecutionState,
    ExecutionStatus,
    Memory,
    Program,
    Session,
    Step,
    StepResult,
)
from entran.resolver import UNKNOWN, VARIABLE_PATTERN, lookup, resolve

HALTED = (ExecutionStatus.COMPLETED, ExecutionStatus.ERROR)


# ---------------------------------------------------------------------------
# Program cursor
# ---------------------------------------------------------------------------


def initial_state(program: Program) -> ExecutionState:
    """A fresh ExecutionState with the cursor on the program's first step."""
    first = next(proc for proc in program.ordered_procedures() if proc.steps)
    return ExecutionState(
        current_step=CurrentStep(
            procedure_id=first.id,
            step_id=first.steps[0].id,
            step_index=0,
            instruction_pointer=0,
        ),
        memory=Memory(persistent_vars=copy.deepcopy(program.global_memory)),
    )


def locate(program: Program, cursor: CurrentStep) -> Step | None:
    procedure = program.get_procedure(cursor.procedure_id)
    if procedure is None or not 0 <= cursor.step_index < len(procedure.steps):
        return None
    return procedure.steps[cursor.step_index]


def next_cursor(program: Program, cursor: CurrentStep) -> CurrentStep | None:
    """
    The cursor one step past `cursor`.

    Moves within the procedure first, then to the next non-empty procedure in
    execution order. Returns None when the program is exhausted.
    """
    procedure = program.get_procedure(cursor.procedure_id)
    ip = cursor.instruction_pointer + 1

    if procedure is not None and cursor.step_index + 1 < len(procedure.steps):
        index = cursor.step_index + 1
        return CurrentStep(
            procedure_id=procedure.id,
            step_id=procedure.steps[index].id,
            step_index=index,
            instruction_pointer=ip,
        )

    ordered = program.ordered_procedures()
    position = next((i for i, proc in enumerate(ordered) if proc.id == cursor.procedure_id), None)
    if position is None:
        return None
    for proc in ordered[position + 1:]:
        if proc.steps:
            return CurrentStep(
                procedure_id=proc.id,
                step_id=proc.steps[0].id,
                step_index=0,
                instruction_pointer=ip,
            )
    return None


def json_type(value: Any, source: str) -> str:
    if value is None:
        return "undefined" if source == UNKNOWN else "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


# ---------------------------------------------------------------------------
# ExecutionMachine
# ---------------------------------------------------------------------------


class ExecutionMachine:
    """
    Applies debug commands to a Session.

    Callers must hold session.lock for every method except pause().
    """

    def __init__(
        self,
        session: Session,
        evaluator: StepEvaluator,
        max_steps: int = config.MAX_STEPS,
    ) -> None:
        self._session = session
        self._evaluator = evaluator
        self._max_steps = max_steps

    @property
    def state(self) -> ExecutionState:
        return self._session.state

    @property
    def _debug(self) -> bool:
        return self._session.options.debug_mode

    # ------------------------------------------------------------------
    # Single-step core
    # ------------------------------------------------------------------

    def _fail(self, error: str, step_id: str | None) -> None:
        state = self.state
        state.status = ExecutionStatus.ERROR
        state.error_state = ErrorState(step_id=step_id, error=error)
        display.execution_error(state.error_state)

    def _complete(self) -> None:
        self.state.status = ExecutionStatus.COMPLETED
        display.execution_completed(self._session.total_steps_executed)

    def _execute_current(self) -> StepResult | None:
        """Run the step under the cursor and advance. Leaves status running on success."""
        session = self._session
        state = self.state
        state.status = ExecutionStatus.RUNNING

        if session.total_steps_executed >= self._max_steps:
            error = str(StepLimitExceeded(self._max_steps))
            self._fail(error, state.current_step.step_id)
            return StepResult(step_id=state.current_step.step_id, success=False, error=error)

        step = locate(session.program, state.current_step)
        if step is None:
            self._complete()
            return None

        if self._debug:
            display.step_start(
                state.current_step.instruction_pointer,
                session.program.total_steps(),
                step.id,
                step.type,
            )

        result = self._evaluator.evaluate(session, step)
        if not result.success:
            self._fail(result.error or "Step failed", step.id)
            return result

        session.total_steps_executed += 1
        following = next_cursor(session.program, state.current_step)
        if following is None:
            self._complete()
        else:
            state.current_step = following
        return result

    def _run(self, stop_when: Callable[[], bool] | None = None) -> StepResult | None:
        """Keep stepping while running; stop on breakpoint, pause request or `stop_when`."""
        session = self._session
        state = self.state
        session.pause_requested.clear()
        state.status = ExecutionStatus.RUNNING

        result = None
        while True:
            if session.pause_requested.is_set():
                session.pause_requested.clear()
                state.status = ExecutionStatus.PAUSED
                display.paused(state.current_step.step_id)
                break

            executed = state.current_step.step_id
            result = self._execute_current()
            if state.status != ExecutionStatus.RUNNING:
                break

            if executed in state.breakpoints:
                state.status = ExecutionStatus.PAUSED
                display.breakpoint_hit(executed)
                break
            if stop_when is not None and stop_when():
                state.status = ExecutionStatus.PAUSED
                if self._debug:
                    display.paused(state.current_step.step_id)
                break
        return result

    # ------------------------------------------------------------------
    # Debug commands
    # ------------------------------------------------------------------

    def step_over(self) -> StepResult | None:
        state = self.state
        if state.status in HALTED:
            display.command_ignored(state.status)
            return None

        result = self._execute_current()
        if state.status == ExecutionStatus.RUNNING:
            state.status = ExecutionStatus.PAUSED
            if self._debug:
                display.paused(state.current_step.step_id)
        return result

    def step_into(self) -> StepResult | None:
        # Procedures share one flat frame, so there is no frame to enter.
        return self.step_over()

    def step_out(self) -> StepResult | None:
        state = self.state
        if state.status in HALTED:
            display.command_ignored(state.status)
            return None
        origin = state.current_step.procedure_id
        return self._run(lambda: state.current_step.procedure_id != origin)

    def continue_(self) -> StepResult | None:
        state = self.state
        if state.status in HALTED:
            display.command_ignored(state.status)
            return None
        return self._run()

    def pause(self) -> bool:
        """Request a pause at the next step boundary. Only effective while running."""
        status = self.state.status
        if status != ExecutionStatus.RUNNING:
            display.pause_ignored(status)
            return False
        self._session.pause_requested.set()
        return True

    def reset(self) -> ExecutionState:
        session = self._session
        session.state = initial_state(session.program)
        session.total_steps_executed = 0
        session.pause_requested.clear()
        display.reset_done(session.id)
        return session.state

    # ------------------------------------------------------------------
    # Read-only inspection
    # ------------------------------------------------------------------

    def inspect(self, variable: str) -> dict[str, Any]:
        name = variable.strip().lstrip("$")
        value, source = lookup(self.state, name)
        length = len(value) if isinstance(value, (str, list, tuple, dict)) else None
        return {
            "name": name,
            "value": value,
            "type": json_type(value, source),
            "length": length,
            "source": source,
        }

    def evaluate(self, expression: str) -> dict[str, Any]:
        """
        Side-effect-free evaluation.

        "$name" looks a variable up, "!cmd" runs cmd through the executor
        (risk gate included) and anything else is returned resolved.
        """
        text = expression.strip()

        match = VARIABLE_PATTERN.fullmatch(text)
        if match:
            value, source = lookup(self.state, match.group(1))
            return {
                "expression": expression,
                "value": value,
                "type": json_type(value, source),
                "source": source,
            }

        if text.startswith("!"):
            try:
                command, output = self._evaluator.run_expression(self._session, text[1:].strip())
            except RiskBlockedError as exc:
                return {
                    "expression": expression,
                    "value": None,
                    "source": "command",
                    "error": str(exc),
                    "risk_level": exc.risk_level,
                }
            except ExecutionError as exc:
                return {
                    "expression": expression,
                    "value": None,
                    "source": "command",
                    "error": str(exc),
                }
            return {
                "expression": expression,
                "value": output.combined,
                "source": "command",
                "command": command,
                "stdout": output.stdout,
                "stderr": output.stderr,
            }

        return {
            "expression": expression,
            "value": resolve(self.state, text),
            "source": "literal",
        }
