"""
Status classifier for worker output lines.

The worker reports progress as free-form, human readable text. This module
turns one line at a time into a typed ``StatusEvent`` using a fixed, ordered
table of recognizers (first match wins). Anything not recognized becomes an
``UnrecognizedLine`` so new worker output never breaks the supervisor.

Bump ``PATTERN_TABLE_VERSION`` whenever a recognizer is added, removed or its
pattern changes.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

PATTERN_TABLE_VERSION = 1

# Optional sign, digits, optional decimal point (".5" and "5." are accepted)
NUMERIC_TOKEN = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)")

# Correlation token echoed by the worker, e.g. "token=1001", "token: 1001", "token #1001"
TOKEN_PATTERN = re.compile(r"\btoken\s*[=:#]?\s*(\d+)\b", re.IGNORECASE)

READY_PATTERN = re.compile(r"Neural Engine:\s*FULLY OPERATIONAL|\bENGINE READY\b")
TRADE_PATTERN = re.compile(r"executed:\s*(?P<value>\S+?)\s*SOL\b")
ARTIFACT_PATTERN = re.compile(r"Deployed (?:transformer|artifact):\s*(?P<artifact_id>[^\s(\[,]+)?")
STRATEGY_MARKERS = ("⚡", "🔺", "🥪")
STRATEGY_TEXT_PATTERN = re.compile(r"\b(?:Activated agent|Strategy activated)\b", re.IGNORECASE)


@dataclass(frozen=True)
class StatusEvent:
    """Base class of all classified worker output lines."""

    raw: str
    token: Optional[int] = None

    kind = "status"


@dataclass(frozen=True)
class EngineReady(StatusEvent):
    kind = "engine_ready"


@dataclass(frozen=True)
class TradeExecuted(StatusEvent):
    """A trade marker; ``profit`` is None when the amount could not be parsed."""

    profit: Optional[float] = None

    kind = "trade_executed"


@dataclass(frozen=True)
class ArtifactDeployed(StatusEvent):
    artifact_id: Optional[str] = None

    kind = "artifact_deployed"


@dataclass(frozen=True)
class StrategyActivated(StatusEvent):
    marker: str = ""

    kind = "strategy_activated"


@dataclass(frozen=True)
class CommandReply(StatusEvent):
    """A structured JSON reply line carrying a correlation token."""

    action: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    kind = "command_reply"


@dataclass(frozen=True)
class UnrecognizedLine(StatusEvent):
    kind = "unrecognized"


def parse_numeric_token(text: str) -> Optional[float]:
    """Parse ``text`` as a numeric token, returning None when malformed."""
    if not NUMERIC_TOKEN.fullmatch(text):
        return None
    return float(text)


def extract_number(text: str, prefix: str, suffix: str) -> Optional[float]:
    """
    Find ``<prefix><number><suffix>`` in ``text`` and return the number.

    Whitespace is allowed between the number and both markers. Returns None
    when the markers are absent or the token between them is not a number.
    """
    pattern = re.compile(re.escape(prefix) + r"\s*(\S+?)\s*" + re.escape(suffix))
    match = pattern.search(text)
    if not match:
        return None
    return parse_numeric_token(match.group(1))


def extract_token(text: str) -> Optional[int]:
    match = TOKEN_PATTERN.search(text)
    return int(match.group(1)) if match else None


def _recognize_reply(line: str) -> Optional[StatusEvent]:
    stripped = line.strip()
    if not stripped.startswith("{"):
        return None
    try:
        data = json.loads(stripped)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    token = data.get("token")
    # bool is an int subclass; reject it explicitly
    if not isinstance(token, int) or isinstance(token, bool):
        return None
    action = data.get("action")
    payload = {k: v for k, v in data.items() if k not in ("token", "action")}
    return CommandReply(
        raw=line,
        token=token,
        action=action if isinstance(action, str) else None,
        payload=payload,
    )


def _recognize_ready(line: str) -> Optional[StatusEvent]:
    if READY_PATTERN.search(line):
        return EngineReady(raw=line, token=extract_token(line))
    return None


def _recognize_trade(line: str) -> Optional[StatusEvent]:
    match = TRADE_PATTERN.search(line)
    if not match:
        return None
    return TradeExecuted(
        raw=line,
        token=extract_token(line),
        profit=parse_numeric_token(match.group("value")),
    )


def _recognize_artifact(line: str) -> Optional[StatusEvent]:
    match = ARTIFACT_PATTERN.search(line)
    if not match:
        return None
    return ArtifactDeployed(
        raw=line,
        token=extract_token(line),
        artifact_id=match.group("artifact_id"),
    )


def _recognize_strategy(line: str) -> Optional[StatusEvent]:
    for marker in STRATEGY_MARKERS:
        if marker in line:
            return StrategyActivated(raw=line, token=extract_token(line), marker=marker)
    match = STRATEGY_TEXT_PATTERN.search(line)
    if match:
        return StrategyActivated(raw=line, token=extract_token(line), marker=match.group(0))
    return None


Recognizer = Callable[[str], Optional[StatusEvent]]

# Order matters: first match wins
DEFAULT_RECOGNIZERS: Tuple[Tuple[str, Recognizer], ...] = (
    ("command_reply", _recognize_reply),
    ("engine_ready", _recognize_ready),
    ("trade_executed", _recognize_trade),
    ("artifact_deployed", _recognize_artifact),
    ("strategy_activated", _recognize_strategy),
)


class StatusClassifier:
    """
    Classifies worker output lines into status events.

    Stateless: the same line always yields an equal event. The supervisor
    applies the returned events to its status and to the correlator.
    """

    version = PATTERN_TABLE_VERSION

    def __init__(self, recognizers: Optional[Tuple[Tuple[str, Recognizer], ...]] = None):
        self._recognizers = recognizers if recognizers is not None else DEFAULT_RECOGNIZERS

    @property
    def recognizer_names(self) -> List[str]:
        return [name for name, _ in self._recognizers]

    def classify(self, line: str) -> StatusEvent:
        for _name, recognize in self._recognizers:
            event = recognize(line)
            if event is not None:
                return event
        return UnrecognizedLine(raw=line)
