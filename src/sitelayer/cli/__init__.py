"""
CLI commands for sitelayer.
"""

from sitelayer.cli.apply import apply_command
from sitelayer.cli.plan import plan_command
from sitelayer.cli.state import (
    state_list_command,
    state_taint_command,
    state_unlock_command,
)
from sitelayer.cli.validate import validate_command

__all__ = [
    "apply_command",
    "plan_command",
    "state_list_command",
    "state_taint_command",
    "state_unlock_command",
    "validate_command",
]
