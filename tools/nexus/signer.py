"""
NEXUS Operator Signing

Ed25519 keys identify the operators who issue administrative commands.
A caller's address is derived from its public key:

    address = "0x" + sha256(raw_public_key)[-20 bytes].hex()

Commands are signed over their canonical JSON bytes. `CallerAuthenticator`
verifies a `SignedCommand` and returns the caller address the engine
should attribute the command to.

Key files are OKP/Ed25519 JWKs:

    {"kty":"OKP","crv":"Ed25519","x":"...","d":"...","kid":"key-1"}

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import base64
import hashlib
import json
import pathlib
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set, Tuple, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from tools.nexus.errors import SignatureInvalid
from tools.nexus.hardening import canonical_json_bytes
from tools.nexus.observability import NexusLayer, get_logger

log = get_logger("signer", NexusLayer.SIGNER)


def b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


def b64url_decode(s: str) -> bytes:
    pad = "=" * ((4 - len(s) % 4) % 4)
    return base64.urlsafe_b64decode((s + pad).encode("ascii"))


def _raw_public_bytes(pub: Ed25519PublicKey) -> bytes:
    return pub.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def address_from_public_key(pub: Union[Ed25519PublicKey, bytes]) -> str:
    """Derive the 0x address for an Ed25519 public key."""
    raw = pub if isinstance(pub, bytes) else _raw_public_bytes(pub)
    if len(raw) != 32:
        raise ValueError(f"Ed25519 public key must be 32 bytes, got {len(raw)}")
    return "0x" + hashlib.sha256(raw).digest()[-20:].hex()


# =============================================================================
# KEY FILES
# =============================================================================

def generate_ed25519_jwk(kid: str = "key-1") -> Dict[str, Any]:
    """Generate a new Ed25519 OKP JWK keypair."""

    priv = Ed25519PrivateKey.generate()

    priv_bytes = priv.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )

    return {
        "kty": "OKP",
        "crv": "Ed25519",
        "x": b64url_encode(_raw_public_bytes(priv.public_key())),
        "d": b64url_encode(priv_bytes),
        "kid": kid,
    }


def load_ed25519_private_key_from_jwk(jwk: Dict[str, Any]) -> Tuple[Ed25519PrivateKey, str]:
    """Load an Ed25519 private key from an OKP JWK.

    Returns:
        (private_key, address) where the address is derived from the key
        itself; a mismatched `x` member is rejected.
    """

    if jwk.get("kty") != "OKP" or jwk.get("crv") != "Ed25519":
        raise ValueError("Only OKP/Ed25519 JWK is supported")

    d = jwk.get("d")
    x = jwk.get("x")
    if not d or not x:
        raise ValueError("JWK must include both 'd' (private) and 'x' (public)")

    priv = Ed25519PrivateKey.from_private_bytes(b64url_decode(d))
    pub_bytes = _raw_public_bytes(priv.public_key())
    if pub_bytes != b64url_decode(x):
        raise ValueError("JWK 'x' does not match the private key")
    return priv, address_from_public_key(pub_bytes)


def load_key_file(path: Union[str, pathlib.Path]) -> Tuple[Ed25519PrivateKey, str]:
    p = pathlib.Path(path)
    try:
        jwk = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ValueError(f"Cannot read key file {p}: {e}") from e
    if not isinstance(jwk, dict):
        raise ValueError("key file must be a JSON object")
    return load_ed25519_private_key_from_jwk(jwk)


def public_jwk_from_private_jwk(jwk: Dict[str, Any]) -> Dict[str, Any]:
    """Return a public-only JWK (no 'd')."""
    out = dict(jwk)
    out.pop("d", None)
    return out


# =============================================================================
# SIGNED COMMANDS
# =============================================================================

@dataclass(frozen=True)
class SignedCommand:
    """A command plus the signature and public key that authorize it."""
    command: Dict[str, Any]
    nonce: str
    signed_at: str
    public_key: str
    signature: str

    def signing_input(self) -> bytes:
        return canonical_json_bytes({
            "command": self.command,
            "nonce": self.nonce,
            "signed_at": self.signed_at,
        })

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": self.command,
            "nonce": self.nonce,
            "signed_at": self.signed_at,
            "public_key": self.public_key,
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SignedCommand":
        try:
            return cls(
                command=dict(data["command"]),
                nonce=str(data["nonce"]),
                signed_at=str(data["signed_at"]),
                public_key=str(data["public_key"]),
                signature=str(data["signature"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SignatureInvalid(f"Malformed signed command: {e}") from e


class CommandSigner:
    """Signs administrative commands with an operator key."""

    def __init__(self, private_key: Ed25519PrivateKey):
        self._key = private_key
        self._public = _raw_public_bytes(private_key.public_key())
        self.address = address_from_public_key(self._public)

    @classmethod
    def from_jwk(cls, jwk: Dict[str, Any]) -> "CommandSigner":
        priv, _ = load_ed25519_private_key_from_jwk(jwk)
        return cls(priv)

    @classmethod
    def from_file(cls, path: Union[str, pathlib.Path]) -> "CommandSigner":
        priv, _ = load_key_file(path)
        return cls(priv)

    def sign(self, command: Dict[str, Any], nonce: Optional[str] = None) -> SignedCommand:
        unsigned = SignedCommand(
            command=dict(command),
            nonce=nonce or secrets.token_hex(16),
            signed_at=datetime.now(timezone.utc).isoformat(),
            public_key=b64url_encode(self._public),
            signature="",
        )
        sig = self._key.sign(unsigned.signing_input())
        return SignedCommand(
            command=unsigned.command,
            nonce=unsigned.nonce,
            signed_at=unsigned.signed_at,
            public_key=unsigned.public_key,
            signature=b64url_encode(sig),
        )


class CallerAuthenticator:
    """
    Verifies signed commands and resolves the caller address.

    Nonces are remembered for the lifetime of the authenticator; a command
    presented twice is rejected as a replay.
    """

    def __init__(self):
        self._seen: Set[str] = set()
        self._lock = threading.Lock()

    def authenticate(self, signed: SignedCommand) -> str:
        try:
            pub_bytes = b64url_decode(signed.public_key)
            sig = b64url_decode(signed.signature)
            pub = Ed25519PublicKey.from_public_bytes(pub_bytes)
        except (ValueError, TypeError) as e:
            raise SignatureInvalid(f"Malformed key or signature: {e}") from e

        if len(sig) != 64:
            raise SignatureInvalid(f"Ed25519 signature must be 64 bytes, got {len(sig)}")

        try:
            pub.verify(sig, signed.signing_input())
        except InvalidSignature:
            log.warning("Rejected command signature", nonce=signed.nonce)
            raise SignatureInvalid("Signature does not match command") from None

        with self._lock:
            if signed.nonce in self._seen:
                raise SignatureInvalid(f"Replayed nonce: {signed.nonce}")
            self._seen.add(signed.nonce)

        address = address_from_public_key(pub_bytes)
        log.debug("Authenticated command", caller=address, nonce=signed.nonce)
        return address
