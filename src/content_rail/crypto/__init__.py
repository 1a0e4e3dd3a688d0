"""
Agent identities for Content Rail

Ed25519 key pairs; an agent's address is its raw public key in hex.
"""

from .identity import AgentIdentity, AccessProof, verify_access_proof

__all__ = [
    "AgentIdentity",
    "AccessProof",
    "verify_access_proof",
]
