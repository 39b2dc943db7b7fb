from .interpreter import (
    USAGE,
    Abort,
    Approve,
    CommandInterpreter,
    CommandResult,
    Directive,
    Go,
    JumpPhase,
    Pause,
    RequestChanges,
    Show,
    SkipGate,
    SkipSkill,
    Status,
    parse_directive,
)

__all__ = [
    "USAGE",
    "Abort",
    "Approve",
    "CommandInterpreter",
    "CommandResult",
    "Directive",
    "Go",
    "JumpPhase",
    "Pause",
    "RequestChanges",
    "Show",
    "SkipGate",
    "SkipSkill",
    "Status",
    "parse_directive",
]
