"""Line protocol between the supervisor and the worker."""

from .classifier import (
    PATTERN_TABLE_VERSION,
    ArtifactDeployed,
    CommandReply,
    EngineReady,
    StatusClassifier,
    StatusEvent,
    StrategyActivated,
    TradeExecuted,
    UnrecognizedLine,
    extract_number,
)
from .commands import CommandAction, OutboundCommand
from .decoder import LineDecoder

__all__ = [
    "PATTERN_TABLE_VERSION",
    "ArtifactDeployed",
    "CommandAction",
    "CommandReply",
    "EngineReady",
    "LineDecoder",
    "OutboundCommand",
    "StatusClassifier",
    "StatusEvent",
    "StrategyActivated",
    "TradeExecuted",
    "UnrecognizedLine",
    "extract_number",
]
