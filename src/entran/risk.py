# risk.py
# Substring-table risk classification for shell commands.
# Pure functions with no side effects.

from entran.models import (
    ChoiceStep,
    CommandAction,
    CommandStep,
    ConditionalStep,
    Program,
    RiskLevel,
)

# Destructive or irreversible operations.
HIGH_RISK_PATTERNS: tuple[str, ...] = (
    "rm -rf",
    "rm -fr",
    "rm -r ",
    "rmdir",
    "del /",
    "format c:",
    "fdisk",
    "mkfs",
    "dd if=",
    "shred",
    "wipefs",
    "> /dev/sd",
    "shutdown",
    "reboot",
    "halt",
    "poweroff",
    "init 0",
    "init 6",
    ":(){",
)

# Service-stopping or firewall-mutating operations.
MEDIUM_RISK_PATTERNS: tuple[str, ...] = (
    "systemctl stop",
    "systemctl disable",
    "systemctl restart",
    "service stop",
    "kill ",
    "killall",
    "pkill",
    "iptables",
    "ip6tables",
    "nft ",
    "ufw ",
    "firewall-cmd",
    "ip route",
    "ip link set",
    "ifconfig",
    "ifdown",
)

_SEVERITY = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


def classify(command: str) -> RiskLevel:
    """Classify a resolved command string as low, medium or high risk."""
    normalized = " ".join((command or "").lower().split())
    # A trailing space lets patterns such as "rm -r " match at the end.
    padded = normalized + " "
    if any(pattern in padded for pattern in HIGH_RISK_PATTERNS):
        return RiskLevel.HIGH
    if any(pattern in padded for pattern in MEDIUM_RISK_PATTERNS):
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def is_blocked(command_risk: RiskLevel, session_risk_level: RiskLevel) -> bool:
    """Safe mode (session risk_level "low") rejects high-risk commands only."""
    return session_risk_level == RiskLevel.LOW and command_risk == RiskLevel.HIGH


def highest(levels: list[RiskLevel]) -> RiskLevel:
    if not levels:
        return RiskLevel.LOW
    return max(levels, key=_SEVERITY.__getitem__)


def assess_program(program: Program) -> RiskLevel:
    """Highest risk across every command a program can run, branches included."""
    commands: list[str] = []
    for step in program.iter_steps():
        if isinstance(step, CommandStep):
            commands.append(step.command)
        elif isinstance(step, ConditionalStep):
            for branch in (step.true_branch, step.false_branch):
                if isinstance(branch, CommandAction):
                    commands.append(branch.command)
        elif isinstance(step, ChoiceStep):
            commands.extend(
                option.action.command
                for option in step.options
                if isinstance(option.action, CommandAction)
            )
    return highest([classify(command) for command in commands])
