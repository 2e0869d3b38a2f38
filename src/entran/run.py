# run.py
# Entry point. Wiring only, no logic lives here.
#
# Drives a small transpiled troubleshooting program through the Session
# Manager the way an outer transport would: start, set a breakpoint,
# continue, inspect, step to the end, then stop.

from entran import display
from entran.sessions import SessionManager

PROGRAM = {
    "name": "Network Connectivity Troubleshooting",
    "tools": ["echo", "uname", "hostname"],
    "procedures": [
        {
            "id": "gather_info",
            "name": "Gather System Information",
            "steps": [
                {
                    "id": "gather_info_step_1",
                    "type": "command",
                    "tool": "hostname",
                    "command": "hostname",
                    "assign_to": "host",
                    "description": "Record the host name, store in host",
                },
                {
                    "id": "gather_info_step_2",
                    "type": "command",
                    "tool": "uname",
                    "command": "uname -s",
                    "assign_to": "kernel",
                    "description": "Identify the kernel",
                },
                {
                    "id": "gather_info_output_3",
                    "type": "assignment",
                    "assign_to": "memory",
                    "value": "platform = $kernel on $host",
                    "description": "**Set to memory:** platform",
                },
            ],
        },
        {
            "id": "check_link",
            "name": "Check Link State",
            "steps": [
                {
                    "id": "check_link_step_1",
                    "type": "command",
                    "tool": "echo",
                    "command": "echo state UP",
                    "assign_to": "link",
                    "description": "Read the link state",
                },
                {
                    "id": "check_link_conditional_2",
                    "type": "conditional",
                    "condition": {
                        "type": "contains_check",
                        "variable": "$link",
                        "operator": "contains",
                        "value": "UP",
                    },
                    "true_branch": {"type": "log", "message": "Link is up on $host"},
                    "false_branch": {
                        "type": "command",
                        "tool": "echo",
                        "command": "echo bringing link up",
                    },
                    "description": "If link contains UP, the interface is healthy",
                },
                {
                    "id": "check_link_step_3",
                    "type": "analysis",
                    "input": ["link", "platform"],
                    "extract": ["interface"],
                    "description": "Note the **Interface:** eth0 and its state $link",
                },
                {
                    "id": "check_link_note_4",
                    "type": "note",
                    "level": "warning",
                    "message": "Do not restart networking on a remote host.",
                },
            ],
        },
    ],
    "execution_order": ["gather_info", "check_link"],
}

ANALYSIS = {
    "intent": {"primary": "network_troubleshooting", "confidence": 0.9},
    "risk_assessment": {"overall_risk": "low"},
}

OPTIONS = {"debug_mode": True, "timeout": 10_000, "risk_level": "low"}


def main() -> None:
    manager = SessionManager()

    started = manager.start(PROGRAM, ANALYSIS, OPTIONS)
    session_id = started.session_id

    manager.breakpoint(session_id, "gather_info_output_3", "set")
    response = manager.execute_step(session_id, "continue")
    display.state_summary(response.state)

    inspected = manager.execute_step(session_id, "inspect", {"variable": "platform"})
    display.note("info", f"platform = {inspected.result['value']!r} ({inspected.result['source']})")

    while response.state.status.value == "paused":
        response = manager.execute_step(session_id, "step_over")

    display.history_table(response.state)
    display.sessions_table(manager.list_sessions())
    manager.stop(session_id)


if __name__ == "__main__":
    main()
