"""
Darkflow Runtime - client swap sessions and configuration wiring.
"""

from darkflow.runtime.context import RuntimeContext
from darkflow.runtime.session import SwapResult, SwapSession, SwapStep

__all__ = [
    "RuntimeContext",
    "SwapSession",
    "SwapStep",
    "SwapResult",
]
