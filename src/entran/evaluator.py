# evaluator.py
# Executes exactly one Step against a session's ExecutionState.
#
# Each handler returns a StepResult or raises a step-level error. evaluate()
# turns those errors into a failed StepResult and always appends one
# execution_history entry. Cursor movement and status changes belong to
# machine.py; nothing here touches them.

import re
import time
from typing import Any, Callable

from entran import display
from entran.errors import CommandFailedError, ExecutionError, RiskBlockedError
from entran.executor import CommandExecutor, CommandOutput
from entran.models import (
    Action,
    AnalysisStep,
    AssignmentStep,
    BooleanCheck,
    ChoiceStep,
    CommandAction,
    CommandStep,
    Condition,
    ConditionalStep,
    ContainsCheck,
    EqualityCheck,
    HistoryEntry,
    LogAction,
    NoteStep,
    RiskLevel,
    Session,
    Step,
    StepResult,
    ToolOutput,
    utcnow,
)
from entran.resolver import (
    VARIABLE_PATTERN,
    get_variable,
    is_bound,
    resolve,
    to_text,
)
from entran.risk import classify, is_blocked

MEMORY_TARGETS = frozenset({"memory", "global"})

_FALSY = frozenset({"", "false", "0", "no", "none", "null", "undefined"})
_ASSIGNMENT = re.compile(r"^\s*(\w+)\s*[:=]\s*(.*)$", re.DOTALL)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _operand(session: Session, reference: str) -> str:
    """A condition operand: a $template, a bare bound variable name, or a literal."""
    state = session.state
    reference = reference.strip()
    if VARIABLE_PATTERN.search(reference):
        return resolve(state, reference).strip()
    if is_bound(state, reference):
        return to_text(get_variable(state, reference)).strip()
    return reference


def _truthy(session: Session, expression: str) -> bool:
    expression = expression.strip()
    match = VARIABLE_PATTERN.fullmatch(expression)
    if match and not is_bound(session.state, match.group(1)):
        return False
    return _operand(session, expression).lower() not in _FALSY


def extract_field(description: str, name: str) -> str | None:
    """
    Pull `name`'s value out of free text such as "**Interface:** eth0".

    Underscores in `name` match any whitespace; emphasis markers are optional.
    Returns None when the label does not appear with a ':' or '=' after it.
    """
    words = [re.escape(word) for word in name.split("_") if word]
    if not words:
        return None
    label = r"\s+".join(words)
    pattern = re.compile(
        rf"(?:\*\*)?{label}(?:\*\*)?\s*[:=]\s*(?:\*\*)?\s*([^\n,;]+)",
        re.IGNORECASE,
    )
    match = pattern.search(description or "")
    if not match:
        return None
    value = match.group(1).strip().rstrip(".*").strip()
    return value or None


# ---------------------------------------------------------------------------
# StepEvaluator
# ---------------------------------------------------------------------------


class StepEvaluator:
    """
    Dispatches a Step to the handler for its type.

    The executor is injected so tests can observe (or forbid) process spawns.

    Example:
        evaluator = StepEvaluator(CommandExecutor())
        result = evaluator.evaluate(session, step)
    """

    def __init__(self, executor: CommandExecutor | None = None) -> None:
        self._executor = executor or CommandExecutor()
        self._handlers: dict[str, Callable[[Session, Any], StepResult]] = {
            "command": self._command,
            "conditional": self._conditional,
            "assignment": self._assignment,
            "choice": self._choice,
            "analysis": self._analysis,
            "note": self._note,
        }

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def evaluate(self, session: Session, step: Step) -> StepResult:
        started_at = utcnow()
        clock = time.perf_counter()

        try:
            handler = self._handlers.get(step.type)
            if handler is None:
                raise ExecutionError(f"Unknown step type '{step.type}' at step {step.id}")
            result = handler(session, step)
        except RiskBlockedError as exc:
            result = StepResult(success=False, error=str(exc), risk_level=exc.risk_level)
        except CommandFailedError as exc:
            result = StepResult(
                success=False,
                error=str(exc),
                stdout=exc.stdout,
                stderr=exc.stderr,
                risk_level=classify(exc.command),
            )
        except ExecutionError as exc:
            result = StepResult(success=False, error=str(exc))

        result.step_id = step.id
        result.step_type = step.type

        duration_ms = int((time.perf_counter() - clock) * 1000)
        session.state.execution_history.append(
            HistoryEntry(
                step_id=step.id,
                type=step.type,
                started_at=started_at,
                completed_at=utcnow(),
                duration_ms=duration_ms,
                success=result.success,
                output=result.output if result.success else None,
                error=result.error,
            )
        )
        if session.options.debug_mode:
            display.step_finished(result, duration_ms)
        return result

    def run_expression(self, session: Session, template: str) -> tuple[str, CommandOutput]:
        """
        Run an ad-hoc command for `evaluate("!cmd")`.

        Goes through the same risk gate as a command step but never writes
        tool outputs, frame variables or history.
        """
        command, _ = self._gate(session, template)
        return command, self._executor.run(
            command,
            timeout_ms=session.options.timeout_ms,
            max_output_bytes=session.options.memory_limit_bytes,
        )

    # ------------------------------------------------------------------
    # Command path
    # ------------------------------------------------------------------

    def _gate(self, session: Session, template: str) -> tuple[str, RiskLevel]:
        command = resolve(session.state, template)
        risk = classify(command)
        if is_blocked(risk, session.options.risk_level):
            display.risk_blocked(command, risk.value)
            raise RiskBlockedError(command, risk.value)
        return command, risk

    def _run_command(self, session: Session, template: str, assign_to: str | None) -> StepResult:
        command, risk = self._gate(session, template)
        if session.options.debug_mode:
            display.command_dispatched(command)

        output = self._executor.run(
            command,
            timeout_ms=session.options.timeout_ms,
            max_output_bytes=session.options.memory_limit_bytes,
        )
        combined = output.combined
        if session.options.debug_mode:
            display.command_output(combined)

        if assign_to:
            state = session.state
            state.heap.tool_outputs[assign_to] = ToolOutput(command=command, output=combined)
            state.frame[assign_to] = combined

        return StepResult(
            success=True,
            output=combined,
            risk_level=risk,
            stdout=output.stdout,
            stderr=output.stderr,
        )

    def _command(self, session: Session, step: CommandStep) -> StepResult:
        return self._run_command(session, step.command, step.assign_to)

    def _run_action(self, session: Session, action: Action) -> StepResult:
        if isinstance(action, CommandAction):
            return self._run_command(session, action.command, action.assign_to)
        if isinstance(action, LogAction):
            message = resolve(session.state, action.message)
            if session.options.debug_mode:
                display.note("info", message)
            return StepResult(success=True, output={"message": message})
        raise ExecutionError(f"Unknown action type '{getattr(action, 'type', action)}'")

    # ------------------------------------------------------------------
    # Other step kinds
    # ------------------------------------------------------------------

    def _check(self, session: Session, condition: Condition) -> bool:
        if isinstance(condition, EqualityCheck):
            expected = resolve(session.state, condition.value).strip()
            return _operand(session, condition.variable) == expected
        if isinstance(condition, ContainsCheck):
            needle = resolve(session.state, condition.value).strip()
            return needle in _operand(session, condition.variable)
        if isinstance(condition, BooleanCheck):
            return _truthy(session, condition.expression)
        raise ExecutionError(f"Unknown condition type '{getattr(condition, 'type', condition)}'")

    def _conditional(self, session: Session, step: ConditionalStep) -> StepResult:
        outcome = self._check(session, step.condition)
        action = step.true_branch if outcome else step.false_branch
        branch = None
        if action is not None:
            branch = "true_branch" if outcome else "false_branch"
        if session.options.debug_mode:
            display.branch_taken(branch, outcome)

        output: dict[str, Any] = {"condition": outcome, "branch": branch, "action_result": None}
        if action is None:
            return StepResult(success=True, output=output)

        action_result = self._run_action(session, action)
        output["action_result"] = action_result.output
        return StepResult(
            success=action_result.success,
            output=output,
            risk_level=action_result.risk_level,
            stdout=action_result.stdout,
            stderr=action_result.stderr,
        )

    def _assignment(self, session: Session, step: AssignmentStep) -> StepResult:
        state = session.state
        value = resolve(state, step.value) if isinstance(step.value, str) else step.value

        if step.assign_to in MEMORY_TARGETS:
            name = step.id
            if isinstance(value, str):
                match = _ASSIGNMENT.match(value)
                if match:
                    name, value = match.group(1), match.group(2).strip()
            state.memory.persistent_vars[name] = value
            target = "persistent_memory"
        else:
            name = step.assign_to
            state.frame[name] = value
            target = "local_variable"

        return StepResult(success=True, output={"target": target, "name": name, "value": value})

    def _choice(self, session: Session, step: ChoiceStep) -> StepResult:
        # Automation mode: the first option is always taken.
        option = step.options[0]
        action_result = self._run_action(session, option.action)
        return StepResult(
            success=action_result.success,
            output={
                "chosen_option": {"id": option.id, "description": option.description},
                "action_result": action_result.output,
            },
            risk_level=action_result.risk_level,
            stdout=action_result.stdout,
            stderr=action_result.stderr,
        )

    def _analysis(self, session: Session, step: AnalysisStep) -> StepResult:
        inputs = {name: get_variable(session.state, name) for name in step.input}
        extracted = {name: extract_field(step.description, name) for name in step.extract}
        return StepResult(success=True, output={"inputs": inputs, "extracted": extracted})

    def _note(self, session: Session, step: NoteStep) -> StepResult:
        message = resolve(session.state, step.message or step.description)
        if session.options.debug_mode:
            display.note(step.level, message)
        return StepResult(success=True, output={"level": step.level, "message": message})
