# resolver.py
# $name substitution across the three variable tiers of a session.
#
# Lookup order, first hit wins:
#   1. frame                  (local_variable)
#   2. memory.persistent_vars (persistent_memory)
#   3. heap.tool_outputs      (tool_output, the captured output string)
#
# Unresolved tokens are left verbatim so half-built programs still run.

import json
import re
from typing import Any

from entran.models import ExecutionState

VARIABLE_PATTERN = re.compile(r"\$(\w+)")

LOCAL_VARIABLE = "local_variable"
PERSISTENT_MEMORY = "persistent_memory"
TOOL_OUTPUT = "tool_output"
UNKNOWN = "unknown"


def lookup(state: ExecutionState, name: str) -> tuple[Any, str]:
    """Return (value, source) for `name`; (None, "unknown") when unbound."""
    if name in state.frame:
        return state.frame[name], LOCAL_VARIABLE
    if name in state.memory.persistent_vars:
        return state.memory.persistent_vars[name], PERSISTENT_MEMORY
    record = state.heap.tool_outputs.get(name)
    if record is not None:
        return record.output, TOOL_OUTPUT
    return None, UNKNOWN


def get_variable(state: ExecutionState, name: str) -> Any:
    value, _ = lookup(state, name.lstrip("$"))
    return value


def is_bound(state: ExecutionState, name: str) -> bool:
    return lookup(state, name)[1] != UNKNOWN


def to_text(value: Any) -> str:
    """Render a variable value the way it appears when substituted into text."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def resolve(state: ExecutionState, text: Any) -> str:
    """Substitute every bound $name in `text`. Non-strings are rendered first."""
    text = to_text(text)

    def _replace(match: re.Match) -> str:
        value, source = lookup(state, match.group(1))
        if source == UNKNOWN:
            return match.group(0)
        return to_text(value)

    return VARIABLE_PATTERN.sub(_replace, text)
