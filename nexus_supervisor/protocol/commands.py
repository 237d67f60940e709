"""
Outbound command frames sent to the worker's stdin.

Each command is one JSON object terminated by a newline:

    {"action": "deploy", "id": "T1", "token": 1001, "timestamp": 1718000000000}

``token`` is the correlation token the worker must echo in its reply.
``timestamp`` is wall-clock milliseconds and purely informational.
"""

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Union

RESERVED_FIELDS = frozenset({"action", "token", "timestamp"})


class CommandAction(str, Enum):
    """Actions understood by the worker."""

    EXECUTE_STRATEGY = "execute_strategy"
    DEPLOY_ARTIFACT = "deploy"
    ACTIVATE_AGENT = "activate_agent"
    UPDATE_CONFIGURATION = "update_config"


@dataclass(frozen=True)
class OutboundCommand:
    """A single command frame."""

    action: str
    payload: Dict[str, Any]
    token: int
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    def __post_init__(self):
        clashes = RESERVED_FIELDS.intersection(self.payload)
        if clashes:
            raise ValueError(f"Payload may not contain reserved fields: {sorted(clashes)}")

    def to_dict(self) -> Dict[str, Any]:
        frame: Dict[str, Any] = {"action": self.action}
        frame.update(self.payload)
        frame["token"] = self.token
        frame["timestamp"] = self.timestamp
        return frame

    def encode(self) -> bytes:
        """Serialize to one newline-terminated JSON line."""
        return (json.dumps(self.to_dict(), separators=(",", ":"), default=str) + "\n").encode(
            "utf-8"
        )


def action_name(action: Union[str, CommandAction]) -> str:
    return action.value if isinstance(action, CommandAction) else str(action)
