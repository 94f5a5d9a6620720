"""Dispatch verification queries to the verifier for the query's chain."""

import logging
from typing import Dict

from zeromiles.config import COSMOS, EVM, LoanConfig
from zeromiles.errors import VerificationTransientError

from .base import ForeignChainVerifier, VerificationQuery, VerificationResult
from .cosmos import CosmosTransferVerifier
from .evm import EvmTransferVerifier

logger = logging.getLogger(__name__)


class ChainRouterVerifier:
    """Routes each query to a per-chain verifier."""

    def __init__(self, verifiers: Dict[str, ForeignChainVerifier]):
        self._verifiers = dict(verifiers)

    @property
    def chains(self) -> list:
        return sorted(self._verifiers)

    async def verify(self, query: VerificationQuery) -> VerificationResult:
        verifier = self._verifiers.get(query.chain)
        if verifier is None:
            # Configuration problem, not a verdict on the claim: keep retrying
            raise VerificationTransientError(f"No verifier configured for chain '{query.chain}'")
        return await verifier.verify(query)


def build_verifier(config: LoanConfig) -> ChainRouterVerifier:
    """Create a router with one verifier per configured chain."""
    verifiers: Dict[str, ForeignChainVerifier] = {}
    for name, chain in config.chains.items():
        if chain.family == COSMOS:
            verifiers[name] = CosmosTransferVerifier(chain, timeout=config.verify_timeout)
        elif chain.family == EVM:
            verifiers[name] = EvmTransferVerifier(chain, timeout=config.verify_timeout)
    logger.debug(f"Configured verifiers for chains: {sorted(verifiers)}")
    return ChainRouterVerifier(verifiers)
