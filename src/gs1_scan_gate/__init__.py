"""GS1 scan gate package."""

from .config import WiringProfile
from .decision import Check, Decision, Outcome, Severity, decide
from .gate import ScanGate
from .normalizer import normalize
from .policy import DEFAULT_POLICY, Policy
from .segmenter import ParseResult, Segment, segment

__all__ = [
    "Check",
    "DEFAULT_POLICY",
    "Decision",
    "Outcome",
    "ParseResult",
    "Policy",
    "ScanGate",
    "Segment",
    "Severity",
    "WiringProfile",
    "decide",
    "normalize",
    "segment",
]
