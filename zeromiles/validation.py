"""Input validation for lock and claim requests."""

import re
from typing import Optional

from zeromiles.config import COSMOS, EVM, ChainConfig

BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
_BECH32_GENERATOR = (0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3)

EVM_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
EVM_TX_HASH_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")
COSMOS_TX_HASH_RE = re.compile(r"^[0-9a-fA-F]{64}$")

MAX_IDENTITY_LENGTH = 128


def _bech32_polymod(values) -> int:
    chk = 1
    for value in values:
        top = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ value
        for i in range(5):
            chk ^= _BECH32_GENERATOR[i] if ((top >> i) & 1) else 0
    return chk


def _bech32_hrp_expand(hrp: str) -> list:
    return [ord(x) >> 5 for x in hrp] + [0] + [ord(x) & 31 for x in hrp]


def is_valid_bech32(address: str, expected_prefix: Optional[str] = None) -> bool:
    """Check bech32 syntax and checksum (BIP-173), optionally pinning the HRP."""
    if not address or len(address) > 90:
        return False
    if address.lower() != address and address.upper() != address:
        return False  # mixed case is never valid
    address = address.lower()
    pos = address.rfind("1")
    if pos < 1 or pos + 7 > len(address):
        return False
    hrp, data_part = address[:pos], address[pos + 1 :]
    if expected_prefix is not None and hrp != expected_prefix.lower():
        return False
    if any(ord(c) < 33 or ord(c) > 126 for c in hrp):
        return False
    if any(c not in BECH32_CHARSET for c in data_part):
        return False
    data = [BECH32_CHARSET.find(c) for c in data_part]
    return _bech32_polymod(_bech32_hrp_expand(hrp) + data) == 1


def is_valid_evm_address(address: str) -> bool:
    return bool(address) and EVM_ADDRESS_RE.match(address) is not None


def is_valid_address(address: str, chain: ChainConfig) -> bool:
    """Check that ``address`` is syntactically valid on ``chain``."""
    if not isinstance(address, str):
        return False
    if chain.family == COSMOS:
        return is_valid_bech32(address, chain.address_prefix)
    if chain.family == EVM:
        return is_valid_evm_address(address)
    return False


def normalize_address(address: str, chain: ChainConfig) -> str:
    """Canonical form of a valid recipient address on ``chain``.

    Bech32 addresses are case-insensitive and chains emit them lower-case.
    EVM addresses keep their EIP-55 checksum casing.
    """
    if chain.family == COSMOS:
        return address.lower()
    return address


def normalize_tx_reference(tx_reference: str, chain: ChainConfig) -> str:
    """Canonical form of a transaction hash for ``chain``.

    Cosmos hashes are upper-case hex without prefix; EVM hashes are
    lower-case hex with ``0x``. Anything else is returned stripped and left
    for the verifier to reject.
    """
    ref = tx_reference.strip()
    if chain.family == EVM and EVM_TX_HASH_RE.match(ref):
        ref = ref.lower()
        return ref if ref.startswith("0x") else "0x" + ref
    if chain.family == COSMOS:
        bare = ref[2:] if ref.lower().startswith("0x") else ref
        if COSMOS_TX_HASH_RE.match(bare):
            return bare.upper()
    return ref


def validate_identity(value: str, field_name: str) -> str:
    """Validate a free-form party identifier (solver, depositor, actor)."""
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{field_name} cannot be empty")
    value = value.strip()
    if len(value) > MAX_IDENTITY_LENGTH:
        raise ValueError(f"{field_name} too long (max {MAX_IDENTITY_LENGTH} characters)")
    if re.search(r"[\x00-\x1f\x7f]", value):
        raise ValueError(f"{field_name} contains control characters")
    return value
