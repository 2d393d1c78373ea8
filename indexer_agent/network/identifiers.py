"""Identifier formats used by the network."""

import hashlib
import re

_IPFS_HASH = re.compile(r"^Qm[1-9A-HJ-NP-Za-km-z]{44}$")
_BYTES32 = re.compile(r"^0x[0-9a-fA-F]{64}$")
_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")

ZERO_PROOF = "0x" + "00" * 32


def is_deployment_id(value: str) -> bool:
    """IPFS hash (Qm...) or its bytes32 hex form."""
    return bool(_IPFS_HASH.match(value) or _BYTES32.match(value))


def is_allocation_id(value: str) -> bool:
    return bool(_ADDRESS.match(value))


def is_proof(value: str) -> bool:
    return bool(_BYTES32.match(value))


def derive_allocation_id(indexer: str, deployment_id: str, epoch: int, index: int) -> str:
    """Allocation ids are addresses derived from indexer, deployment, epoch and a per-epoch index."""
    seed = f"{indexer.lower()}:{deployment_id}:{epoch}:{index}".encode()
    return "0x" + hashlib.sha256(seed).hexdigest()[-40:]
