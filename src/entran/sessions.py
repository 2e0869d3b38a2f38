# sessions.py
# Session registry and the command API consumed by outer transports.
#
# Concurrency:
#   - the store is the only structure shared between sessions; it guards
#     itself with one lock.
#   - every debug command on a session runs under that session's own lock,
#     so at most one command is in flight per session id. Different
#     sessions run fully in parallel.
#   - pause is the exception: it only raises a flag that a running
#     continue/step_out observes between steps.

import os
import sys
import threading
import uuid
from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime, timedelta
from typing import Any

from pydantic import AliasChoices
from pydantic import ValidationError as PydanticValidationError

from entran import config, display
from entran.errors import CapacityError, NotFoundError, ValidationError
from entran.evaluator import StepEvaluator
from entran.executor import CommandExecutor
from entran.machine import ExecutionMachine, initial_state
from entran.models import (
    Analysis,
    BreakpointAction,
    CommandRecord,
    CommandResponse,
    DebugCommand,
    ExecutionState,
    ExecutionStatus,
    Program,
    Session,
    SessionOptions,
    SessionSummary,
    StartResponse,
    utcnow,
)
from entran.risk import assess_program


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class SessionStore(ABC):
    """
    Abstract registry of live sessions.

    Implementations must be safe to call from several threads at once.
    """

    @abstractmethod
    def add(self, session: Session, capacity: int) -> bool:
        """
        Insert `session` unless `capacity` sessions are already stored.

        Returns:
            True if the session was stored, False if the store is full.
        """

    @abstractmethod
    def get(self, session_id: str) -> Session | None:
        """Return the session, or None for unknown ids."""

    @abstractmethod
    def remove(self, session_id: str) -> bool:
        """Delete a session. Returns False when it was not stored."""

    @abstractmethod
    def values(self) -> list[Session]:
        """Snapshot of every stored session."""

    @abstractmethod
    def count(self) -> int:
        """Number of stored sessions."""


class InMemorySessionStore(SessionStore):
    """Process-lifetime store backed by a dict and a single lock."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def add(self, session: Session, capacity: int) -> bool:
        with self._lock:
            if len(self._sessions) >= capacity:
                return False
            self._sessions[session.id] = session
            return True

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def remove(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def values(self) -> list[Session]:
        with self._lock:
            return list(self._sessions.values())

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _validate(model: type, data: Any, what: str):
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data or {})
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid {what}: {exc}") from exc


def _snapshot(state: ExecutionState) -> ExecutionState:
    return state.model_copy(deep=True)


def _cursor_view(state: ExecutionState) -> ExecutionState:
    """
    Status, cursor and breakpoints only.

    Built without the session lock while another thread may be stepping, so
    it copies fields that are only ever replaced, never mutated in place.
    """
    return ExecutionState(
        status=state.status,
        current_step=state.current_step.model_copy(),
        breakpoints=list(state.breakpoints),
    )


def _option_names() -> dict[str, str]:
    """Every accepted SessionOptions key (field names and aliases) mapped to its field."""
    names = {}
    for name, field in SessionOptions.model_fields.items():
        names[name] = name
        if isinstance(field.validation_alias, AliasChoices):
            for choice in field.validation_alias.choices:
                if isinstance(choice, str):
                    names[choice] = name
    return names


def _max_rss_bytes() -> int | None:
    if os.name != "posix":
        return None
    import resource

    rss = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # Linux reports kilobytes, macOS bytes.
    return rss if sys.platform == "darwin" else rss * 1024


# ---------------------------------------------------------------------------
# SessionManager
# ---------------------------------------------------------------------------


class SessionManager:
    """
    Owns every debugging session in the process.

    Construct once at start-up and pass by reference.

    Example:
        manager = SessionManager()
        started = manager.start(program_dict, options={"risk_level": "low"})
        manager.breakpoint(started.session_id, "diag_step_2", "set")
        response = manager.execute_step(started.session_id, "continue")
        print(response.state.status)
    """

    def __init__(
        self,
        store: SessionStore | None = None,
        executor: CommandExecutor | None = None,
        max_sessions: int = config.MAX_SESSIONS,
        max_steps: int = config.MAX_STEPS,
        idle_timeout: timedelta = timedelta(seconds=config.IDLE_TIMEOUT_SECONDS),
    ) -> None:
        self._store = store or InMemorySessionStore()
        self._evaluator = StepEvaluator(executor or CommandExecutor())
        self._max_sessions = max_sessions
        self._max_steps = max_steps
        self._idle_timeout = idle_timeout

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _get(self, session_id: str) -> Session:
        session = self._store.get(session_id)
        if session is None:
            raise NotFoundError(f"Execution session not found: {session_id}")
        return session

    def _machine(self, session: Session) -> ExecutionMachine:
        return ExecutionMachine(session, self._evaluator, max_steps=self._max_steps)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(
        self,
        program: Program | dict,
        analysis: Analysis | dict | None = None,
        options: SessionOptions | dict | None = None,
    ) -> StartResponse:
        """
        Validate inputs and create a session.

        Raises ValidationError for malformed input and CapacityError when the
        session ceiling has been reached. Nothing is stored in either case.
        """
        program = _validate(Program, program, "program")
        if analysis is not None:
            analysis = _validate(Analysis, analysis, "analysis")
        options = _validate(SessionOptions, options, "session options")

        session = Session(
            id=str(uuid.uuid4()),
            program=program,
            analysis=analysis,
            options=options,
            state=initial_state(program),
        )
        if not self._store.add(session, self._max_sessions):
            reason = f"Session limit reached ({self._max_sessions} active sessions)"
            display.session_rejected(reason)
            raise CapacityError(reason)

        display.session_started(session)

        step_result = None
        if options.auto_continue:
            with session.lock:
                step_result = self._machine(session).continue_()
                session.command_history.append(
                    CommandRecord(command=DebugCommand.CONTINUE, status_after=session.state.status)
                )
        return StartResponse(
            session_id=session.id,
            state=_snapshot(session.state),
            step_result=step_result,
        )

    def stop(self, session_id: str) -> dict[str, bool]:
        stopped = self._store.remove(session_id)
        display.session_stopped(session_id, stopped)
        return {"stopped": stopped}

    def sweep_idle(
        self,
        max_idle: timedelta | None = None,
        now: datetime | None = None,
    ) -> list[str]:
        """Remove sessions whose last activity predates now - max_idle."""
        threshold = (now or utcnow()) - (max_idle if max_idle is not None else self._idle_timeout)
        removed = [
            session.id
            for session in self._store.values()
            if session.last_activity < threshold and self._store.remove(session.id)
        ]
        display.sessions_swept(removed)
        return removed

    # ------------------------------------------------------------------
    # Debug commands
    # ------------------------------------------------------------------

    def execute_step(
        self,
        session_id: str,
        command: DebugCommand | str,
        params: dict[str, Any] | None = None,
    ) -> CommandResponse:
        """
        Single entry point for debug commands.

        Step-level failures come back inside the response (state.status ==
        "error"); only unknown sessions or malformed commands raise.
        """
        try:
            command = DebugCommand(command)
        except ValueError as exc:
            raise ValidationError(f"Unknown debug command: {command!r}") from exc
        params = dict(params or {})
        session = self._get(session_id)
        display.command_received(session_id, command.value)

        if command == DebugCommand.PAUSE:
            # Must not wait behind a running continue.
            paused = self._machine(session).pause()
            return self._record(
                session,
                command,
                params,
                state=_cursor_view(session.state),
                success=paused,
                message=(
                    "Pause requested; use get_state for the full state"
                    if paused
                    else f"Pause ignored while {session.state.status.value}"
                ),
            )

        with session.lock:
            machine = self._machine(session)
            status_before = session.state.status

            if command == DebugCommand.RESET:
                machine.reset()
                return self._record(session, command, params, success=True)

            if command == DebugCommand.INSPECT:
                variable = params.get("variable") or params.get("name")
                if not variable:
                    raise ValidationError("inspect requires a 'variable' parameter")
                return self._record(session, command, params, success=True, result=machine.inspect(variable))

            if command == DebugCommand.EVALUATE:
                expression = params.get("expression")
                if expression is None:
                    raise ValidationError("evaluate requires an 'expression' parameter")
                result = machine.evaluate(str(expression))
                return self._record(session, command, params, success="error" not in result, result=result)

            handlers = {
                DebugCommand.STEP_OVER: machine.step_over,
                DebugCommand.STEP_INTO: machine.step_into,
                DebugCommand.STEP_OUT: machine.step_out,
                DebugCommand.CONTINUE: machine.continue_,
            }
            step_result = handlers[command]()

            if step_result is None and status_before in (ExecutionStatus.COMPLETED, ExecutionStatus.ERROR):
                return self._record(
                    session,
                    command,
                    params,
                    success=status_before == ExecutionStatus.COMPLETED,
                    message=f"Execution already {status_before.value}; reset to run again",
                )
            success = step_result.success if step_result is not None else True
            return self._record(session, command, params, success=success, step_result=step_result)

    def _record(
        self,
        session: Session,
        command: DebugCommand,
        params: dict,
        state: ExecutionState | None = None,
        **response: Any,
    ) -> CommandResponse:
        session.touch()
        session.command_history.append(
            CommandRecord(command=command, params=params, status_after=session.state.status)
        )
        if state is None:
            state = _snapshot(session.state)
        return CommandResponse(command=command, state=state, **response)

    def breakpoint(self, session_id: str, step_id: str, action: BreakpointAction | str) -> dict[str, list[str]]:
        """Add or remove a breakpoint. Both directions are idempotent."""
        try:
            action = BreakpointAction(action)
        except ValueError as exc:
            raise ValidationError(f"Unknown breakpoint action: {action!r}") from exc
        if not step_id:
            raise ValidationError("breakpoint requires a step_id")

        session = self._get(session_id)
        with session.lock:
            breakpoints = session.state.breakpoints
            if action == BreakpointAction.SET and step_id not in breakpoints:
                breakpoints.append(step_id)
            elif action == BreakpointAction.REMOVE and step_id in breakpoints:
                breakpoints.remove(step_id)
            session.touch()
            current = list(breakpoints)

        display.breakpoint_changed(step_id, action.value, current)
        return {"breakpoints": current}

    def update_options(self, session_id: str, **changes: Any) -> SessionOptions:
        """
        Change options on a live session. State is untouched; an errored
        session still needs reset.

        Accepts field names or their short aliases (`timeout`, `memory_limit`).
        """
        names = _option_names()
        unknown = sorted(key for key in changes if key not in names)
        if unknown:
            raise ValidationError(f"Unknown session options: {', '.join(unknown)}")
        changes = {names[key]: value for key, value in changes.items()}

        session = self._get(session_id)
        with session.lock:
            merged = session.options.model_dump() | changes
            session.options = _validate(SessionOptions, merged, "session options")
            session.touch()
            return session.options

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def get_state(self, session_id: str) -> ExecutionState:
        session = self._get(session_id)
        with session.lock:
            return _snapshot(session.state)

    def get_session(self, session_id: str) -> Session:
        return self._get(session_id)

    def list_sessions(self) -> list[SessionSummary]:
        summaries = []
        for session in self._store.values():
            analysis = session.analysis
            summaries.append(
                SessionSummary(
                    id=session.id,
                    program=session.program.name,
                    status=session.state.status,
                    created_at=session.created_at,
                    last_activity=session.last_activity,
                    total_steps_executed=session.total_steps_executed,
                    current_step_id=session.state.current_step.step_id,
                    intent=analysis.primary_intent if analysis else None,
                    overall_risk=(
                        analysis.overall_risk
                        if analysis and analysis.overall_risk
                        else assess_program(session.program).value
                    ),
                )
            )
        return summaries

    def health(self) -> dict[str, Any]:
        sessions = self._store.values()
        by_status = Counter(session.state.status.value for session in sessions)
        return {
            "status": "healthy",
            "active_sessions": len(sessions),
            "max_sessions": self._max_sessions,
            "sessions_by_status": dict(by_status),
            "memory": {"max_rss_bytes": _max_rss_bytes()},
        }
