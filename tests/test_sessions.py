import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from conftest import command, note, program_dict
from entran.errors import CapacityError, NotFoundError, ValidationError
from entran.executor import CommandOutput
from entran.models import DebugCommand, ExecutionStatus, RiskLevel, utcnow
from entran.sessions import InMemorySessionStore, SessionManager

PROGRAM = program_dict(
    ("p1", [note("p1_s1"), command("p1_s2", "hostname", assign_to="host")]),
    ("p2", [note("p2_s1", "checking $host")]),
)
QUIET = {"debug_mode": False}


@pytest.fixture
def manager(mock_executor):
    return SessionManager(executor=mock_executor, max_sessions=3)


# ---------------------------------------------------------------------------
# start / stop / capacity
# ---------------------------------------------------------------------------


def test_start_returns_id_and_initial_state(manager):
    started = manager.start(PROGRAM, options=QUIET)

    assert started.session_id
    assert started.state.status == ExecutionStatus.INITIALIZED
    assert started.state.current_step.step_id == "p1_s1"
    assert started.step_result is None
    assert [summary.id for summary in manager.list_sessions()] == [started.session_id]


def test_session_ids_are_unique(manager):
    ids = {manager.start(PROGRAM, options=QUIET).session_id for _ in range(3)}
    assert len(ids) == 3


def test_capacity_ceiling(manager):
    for _ in range(3):
        manager.start(PROGRAM, options=QUIET)
    with pytest.raises(CapacityError, match="limit reached"):
        manager.start(PROGRAM, options=QUIET)
    assert manager.health()["active_sessions"] == 3


def test_stopping_frees_capacity(manager):
    ids = [manager.start(PROGRAM, options=QUIET).session_id for _ in range(3)]
    assert manager.stop(ids[0]) == {"stopped": True}
    assert manager.stop(ids[0]) == {"stopped": False}
    manager.start(PROGRAM, options=QUIET)
    with pytest.raises(NotFoundError):
        manager.get_state(ids[0])


@pytest.mark.parametrize(
    "program, options",
    [
        ({"name": "no procedures"}, QUIET),
        (program_dict(("p1", [{"id": "s1", "type": "mystery"}])), QUIET),
        (PROGRAM, {"timeout_ms": 10}),
        (PROGRAM, {"risk_level": "reckless"}),
    ],
)
def test_invalid_input_is_rejected_before_a_session_exists(manager, program, options):
    with pytest.raises(ValidationError):
        manager.start(program, options=options)
    assert manager.list_sessions() == []


def test_auto_continue_runs_on_start(manager):
    started = manager.start(PROGRAM, options={"debug_mode": False, "auto_continue": True})
    assert started.state.status == ExecutionStatus.COMPLETED
    assert started.step_result.success is True
    session = manager.get_session(started.session_id)
    assert session.total_steps_executed == 3
    assert session.command_history[0].command == DebugCommand.CONTINUE


# ---------------------------------------------------------------------------
# Debug commands
# ---------------------------------------------------------------------------


def test_step_over_response(manager):
    session_id = manager.start(PROGRAM, options=QUIET).session_id

    response = manager.execute_step(session_id, "step_over")

    assert response.success is True
    assert response.command == DebugCommand.STEP_OVER
    assert response.step_result.step_id == "p1_s1"
    assert response.state.status == ExecutionStatus.PAUSED
    assert response.state.current_step.step_id == "p1_s2"


def test_execute_step_records_history_and_activity(manager):
    session_id = manager.start(PROGRAM, options=QUIET).session_id
    session = manager.get_session(session_id)
    before = session.last_activity

    manager.execute_step(session_id, "step_over")
    manager.execute_step(session_id, "inspect", {"variable": "host"})

    assert [record.command for record in session.command_history] == [
        DebugCommand.STEP_OVER,
        DebugCommand.INSPECT,
    ]
    assert session.command_history[0].status_after == ExecutionStatus.PAUSED
    assert session.command_history[1].params == {"variable": "host"}
    assert session.last_activity >= before


def test_returned_state_is_a_snapshot(manager):
    session_id = manager.start(PROGRAM, options=QUIET).session_id
    state = manager.get_state(session_id)
    state.frame["tampered"] = True
    assert "tampered" not in manager.get_state(session_id).frame


def test_continue_then_commands_on_completed_session(manager):
    session_id = manager.start(PROGRAM, options=QUIET).session_id

    finished = manager.execute_step(session_id, "continue")
    again = manager.execute_step(session_id, "step_over")

    assert finished.state.status == ExecutionStatus.COMPLETED
    assert finished.state.frame["host"] == "ok"
    assert again.step_result is None
    assert again.state.status == ExecutionStatus.COMPLETED
    assert "reset" in again.message


def test_evaluate_and_inspect_through_the_manager(manager):
    session_id = manager.start(PROGRAM, options=QUIET).session_id
    manager.execute_step(session_id, "continue")

    evaluated = manager.execute_step(session_id, "evaluate", {"expression": "$host"})
    inspected = manager.execute_step(session_id, "inspect", {"variable": "host"})

    assert evaluated.result["value"] == inspected.result["value"] == "ok"
    assert evaluated.result["source"] == inspected.result["source"] == "local_variable"
    assert inspected.result["length"] == 2


def test_pause_when_idle_reports_failure(manager):
    session_id = manager.start(PROGRAM, options=QUIET).session_id
    response = manager.execute_step(session_id, "pause")
    assert response.success is False
    assert response.state.status == ExecutionStatus.INITIALIZED


def test_reset_through_the_manager(manager):
    started = manager.start(PROGRAM, options=QUIET)
    manager.execute_step(started.session_id, "continue")

    response = manager.execute_step(started.session_id, "reset")

    assert response.state.model_dump_json() == started.state.model_dump_json()
    assert manager.get_session(started.session_id).total_steps_executed == 0


@pytest.mark.parametrize(
    "cmd, params",
    [("jump", None), ("evaluate", {}), ("inspect", {"variable": ""})],
)
def test_malformed_commands(manager, cmd, params):
    session_id = manager.start(PROGRAM, options=QUIET).session_id
    with pytest.raises(ValidationError):
        manager.execute_step(session_id, cmd, params)


def test_unknown_session(manager):
    with pytest.raises(NotFoundError):
        manager.execute_step("nope", "step_over")
    with pytest.raises(NotFoundError):
        manager.get_state("nope")
    with pytest.raises(NotFoundError):
        manager.breakpoint("nope", "p1_s1", "set")


# ---------------------------------------------------------------------------
# Breakpoints
# ---------------------------------------------------------------------------


def test_breakpoints_are_idempotent(manager):
    session_id = manager.start(PROGRAM, options=QUIET).session_id

    assert manager.breakpoint(session_id, "p1_s2", "set") == {"breakpoints": ["p1_s2"]}
    assert manager.breakpoint(session_id, "p1_s2", "set") == {"breakpoints": ["p1_s2"]}
    assert manager.breakpoint(session_id, "p2_s1", "remove") == {"breakpoints": ["p1_s2"]}
    assert manager.breakpoint(session_id, "p1_s2", "remove") == {"breakpoints": []}


def test_breakpoint_stops_continue(manager):
    session_id = manager.start(PROGRAM, options=QUIET).session_id
    manager.breakpoint(session_id, "p1_s2", "set")

    response = manager.execute_step(session_id, "continue")

    assert response.state.status == ExecutionStatus.PAUSED
    assert response.state.current_step.step_id == "p2_s1"


def test_breakpoint_rejects_unknown_action(manager):
    session_id = manager.start(PROGRAM, options=QUIET).session_id
    with pytest.raises(ValidationError):
        manager.breakpoint(session_id, "p1_s1", "toggle")


# ---------------------------------------------------------------------------
# Safe mode recovery
# ---------------------------------------------------------------------------


def test_lifting_safe_mode_then_reset_recovers(manager, mock_executor):
    risky = program_dict(("p1", [command("s1", "rm -rf /tmp/cache")]))
    session_id = manager.start(risky, options={"debug_mode": False, "risk_level": "low"}).session_id

    blocked = manager.execute_step(session_id, "step_over")
    assert blocked.success is False
    assert blocked.step_result.risk_level == RiskLevel.HIGH
    assert blocked.state.status == ExecutionStatus.ERROR
    mock_executor.run.assert_not_called()

    options = manager.update_options(session_id, risk_level="medium")
    assert options.risk_level == RiskLevel.MEDIUM
    assert manager.get_state(session_id).status == ExecutionStatus.ERROR

    manager.execute_step(session_id, "reset")
    done = manager.execute_step(session_id, "step_over")
    assert done.state.status == ExecutionStatus.COMPLETED


def test_update_options_validates(manager):
    session_id = manager.start(PROGRAM, options=QUIET).session_id
    with pytest.raises(ValidationError):
        manager.update_options(session_id, timeout_ms=1)


def test_update_options_accepts_short_key_names(manager):
    session_id = manager.start(PROGRAM, options={"debug_mode": False, "timeout_ms": 10_000}).session_id

    options = manager.update_options(session_id, timeout=5000, memory_limit=2048)

    assert options.timeout_ms == 5000
    assert options.memory_limit_bytes == 2048
    assert manager.get_session(session_id).options.timeout_ms == 5000


def test_update_options_rejects_unknown_keys(manager):
    session_id = manager.start(PROGRAM, options=QUIET).session_id
    before = manager.get_session(session_id).options
    with pytest.raises(ValidationError, match="timeout_seconds"):
        manager.update_options(session_id, timeout_seconds=5)
    assert manager.get_session(session_id).options == before


# ---------------------------------------------------------------------------
# Idle sweep, listing, health
# ---------------------------------------------------------------------------


def test_sweep_idle_removes_only_stale_sessions(manager):
    stale = manager.start(PROGRAM, options=QUIET).session_id
    fresh = manager.start(PROGRAM, options=QUIET).session_id
    manager.get_session(stale).last_activity = utcnow() - timedelta(hours=2)

    removed = manager.sweep_idle()

    assert removed == [stale]
    assert [summary.id for summary in manager.list_sessions()] == [fresh]


def test_sweep_idle_with_explicit_threshold(manager):
    session_id = manager.start(PROGRAM, options=QUIET).session_id
    later = utcnow() + timedelta(minutes=10)
    assert manager.sweep_idle(max_idle=timedelta(minutes=5), now=later) == [session_id]


def test_summary_reports_analysis_or_assessed_risk(manager):
    with_analysis = manager.start(
        PROGRAM,
        analysis={"intent": {"primary": "diagnose"}, "risk_assessment": {"overall_risk": "medium"}},
        options=QUIET,
    ).session_id
    without = manager.start(PROGRAM, options=QUIET).session_id

    summaries = {summary.id: summary for summary in manager.list_sessions()}

    assert summaries[with_analysis].intent == "diagnose"
    assert summaries[with_analysis].overall_risk == "medium"
    assert summaries[without].intent is None
    assert summaries[without].overall_risk == "low"
    assert summaries[without].program == "test program"


def test_health(manager):
    session_id = manager.start(PROGRAM, options=QUIET).session_id
    manager.start(PROGRAM, options=QUIET)
    manager.execute_step(session_id, "continue")

    health = manager.health()

    assert health["status"] == "healthy"
    assert health["active_sessions"] == 2
    assert health["max_sessions"] == 3
    assert health["sessions_by_status"] == {"completed": 1, "initialized": 1}
    assert "max_rss_bytes" in health["memory"]


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


def test_sessions_run_independently_in_parallel(mock_executor):
    manager = SessionManager(store=InMemorySessionStore(), executor=mock_executor, max_sessions=4)
    ids = [manager.start(PROGRAM, options=QUIET).session_id for _ in range(4)]

    with ThreadPoolExecutor(max_workers=4) as pool:
        responses = list(pool.map(lambda sid: manager.execute_step(sid, "continue"), ids))

    assert all(response.state.status == ExecutionStatus.COMPLETED for response in responses)
    assert all(manager.get_session(sid).total_steps_executed == 3 for sid in ids)


def test_commands_on_one_session_are_serialised(mock_executor):
    def _slow(command_text, **kwargs):
        time.sleep(0.05)
        return CommandOutput(stdout="ok\n", stderr="", exit_code=0)

    mock_executor.run.side_effect = _slow
    program = program_dict(("p1", [command(f"c{i}", "true") for i in range(4)]))
    manager = SessionManager(executor=mock_executor)
    session_id = manager.start(program, options=QUIET).session_id

    barrier = threading.Barrier(2)

    def _continue(_):
        barrier.wait()
        return manager.execute_step(session_id, "continue")

    with ThreadPoolExecutor(max_workers=2) as pool:
        list(pool.map(_continue, range(2)))

    session = manager.get_session(session_id)
    assert session.total_steps_executed == 4
    assert [entry.step_id for entry in session.state.execution_history] == ["c0", "c1", "c2", "c3"]
    assert mock_executor.run.call_count == 4


def test_pause_while_continue_is_running_never_raises(mock_executor):
    steps = [
        {"id": f"a{i}", "type": "assignment", "assign_to": f"v{i}", "value": "x"}
        for i in range(300)
    ]
    manager = SessionManager(executor=mock_executor)
    session_id = manager.start(program_dict(("p1", steps)), options=QUIET).session_id

    done = threading.Event()
    errors = []
    accepted = []

    def _pause():
        while not done.is_set():
            try:
                response = manager.execute_step(session_id, "pause")
            except RuntimeError as exc:
                errors.append(exc)
                return
            if response.success:
                accepted.append(response)

    interval = sys.getswitchinterval()
    sys.setswitchinterval(1e-6)
    pauser = threading.Thread(target=_pause)
    pauser.start()
    try:
        status = None
        for _ in range(10_000):
            status = manager.execute_step(session_id, "continue").state.status
            if status == ExecutionStatus.COMPLETED:
                break
    finally:
        done.set()
        pauser.join()
        sys.setswitchinterval(interval)

    assert errors == []
    assert status == ExecutionStatus.COMPLETED
    assert len(manager.get_state(session_id).frame) == 300
    for response in accepted:
        assert response.state.execution_history == []
        assert response.state.current_step.step_id.startswith("a")
