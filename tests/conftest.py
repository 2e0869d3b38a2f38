import os

# Keep rich output out of test logs; must be set before entran is imported.
os.environ.setdefault("ENTRAN_QUIET", "1")

import pytest
from unittest.mock import MagicMock

from entran.executor import CommandExecutor, CommandOutput
from entran.machine import initial_state
from entran.models import Program, Session, SessionOptions


def program_dict(*procedures, **extra) -> dict:
    """Build a raw program from (procedure_id, [step dicts]) pairs."""
    data = {
        "name": "test program",
        "tools": [],
        "procedures": [
            {"id": proc_id, "name": proc_id, "steps": steps} for proc_id, steps in procedures
        ],
    }
    data.update(extra)
    return data


def note(step_id: str, message: str = "") -> dict:
    return {"id": step_id, "type": "note", "level": "info", "message": message or step_id}


def command(step_id: str, cmd: str, assign_to: str | None = None) -> dict:
    step = {"id": step_id, "type": "command", "tool": cmd.split()[0], "command": cmd}
    if assign_to:
        step["assign_to"] = assign_to
    return step


def make_session(program: dict | Program, **options) -> Session:
    if not isinstance(program, Program):
        program = Program.model_validate(program)
    options.setdefault("debug_mode", False)
    return Session(
        id="test-session",
        program=program,
        options=SessionOptions.model_validate(options),
        state=initial_state(program),
    )


@pytest.fixture
def mock_executor():
    executor = MagicMock(spec=CommandExecutor)
    executor.run.return_value = CommandOutput(stdout="ok\n", stderr="", exit_code=0)
    return executor
