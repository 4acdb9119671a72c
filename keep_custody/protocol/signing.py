"""
secp256k1 signing and recovery for keep digests.

The verifier only needs `recover_signer`; `sign_digest` and
`address_of` are the client-side half, used by signers, tests and the
API's digest helper.
"""

from __future__ import annotations

from coincurve import PrivateKey, PublicKey

from keep_custody.protocol.encoding import public_key_to_address
from keep_custody.protocol.schema import Signature


def address_of(private_key: PrivateKey) -> str:
    """Account address controlled by a private key."""
    return public_key_to_address(private_key.public_key.format(compressed=False))


def sign_digest(private_key: PrivateKey, digest: bytes, user: str | None = None) -> Signature:
    """Sign a 32-byte digest and return an (v, r, s) record with v in {27, 28}."""
    if len(digest) != 32:
        raise ValueError("Digest must be 32 bytes")
    raw = private_key.sign_recoverable(digest, hasher=None)
    return Signature(
        v=raw[64] + 27,
        r=int.from_bytes(raw[:32], "big"),
        s=int.from_bytes(raw[32:64], "big"),
        user=user,
    )


def recover_signer(digest: bytes, signature: Signature) -> str:
    """
    Recover the signing address for a digest.

    Raises:
        ValueError: if the signature does not recover to a public key.
    """
    if signature.v not in (0, 1, 27, 28):
        raise ValueError(f"Unsupported recovery byte v={signature.v}")
    public_key = PublicKey.from_signature_and_message(
        signature.to_recoverable(), digest, hasher=None
    )
    return public_key_to_address(public_key.format(compressed=False))
