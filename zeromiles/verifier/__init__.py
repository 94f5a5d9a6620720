"""Foreign-chain verification for zeromiles.

Modules:
- base.py: Verifier protocol, query and result types
- cosmos.py: Bank transfer verification over Cosmos SDK LCD (Osmosis)
- evm.py: ERC20 transfer verification over JSON-RPC (Base, Ethereum)
- router.py: Per-chain dispatch
"""

from zeromiles.verifier.base import (
    ForeignChainVerifier,
    VerificationQuery,
    VerificationResult,
    VerificationStatus,
)
from zeromiles.verifier.cosmos import CosmosTransferVerifier
from zeromiles.verifier.evm import EvmTransferVerifier
from zeromiles.verifier.router import ChainRouterVerifier, build_verifier

__all__ = [
    "ForeignChainVerifier",
    "VerificationQuery",
    "VerificationResult",
    "VerificationStatus",
    "CosmosTransferVerifier",
    "EvmTransferVerifier",
    "ChainRouterVerifier",
    "build_verifier",
]
