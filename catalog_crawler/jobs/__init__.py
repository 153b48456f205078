"""Job state, retry policy and quarantine."""

from .quarantine import QuarantineStore
from .retry import Abort, Quarantine, Retry, backoff_delay, classify, decide
from .state import LEGAL_TRANSITIONS, transition

__all__ = [
    "Abort",
    "LEGAL_TRANSITIONS",
    "Quarantine",
    "QuarantineStore",
    "Retry",
    "backoff_delay",
    "classify",
    "decide",
    "transition",
]
