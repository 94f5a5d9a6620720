"""
ZeroMiles - cross-chain collateralized loan settlement.

Lock ETH, receive USDC on another chain, and let solvers reclaim the
collateral once their payout is verified on that chain.
"""

from .engine import EscrowEngine
from .facade import LoanRequestAPI

try:
    from importlib.metadata import version

    __version__ = version("zeromiles")
except Exception:
    __version__ = "0.0.0"

__all__ = ["EscrowEngine", "LoanRequestAPI"]
