"""Preboarding allow-list Merkle utilities.

This module commits to a set of crew addresses with a single 32-byte root and
supports compact membership proofs, so the engine never stores the full list.

Design goals:
- Deterministic across implementations
- Simple reference implementation (not optimized)
- Proofs without left/right tags (sorted-pair hashing)

Hashing:
- SHA-256
- leaf = SHA256(lowercased "0x..." address, UTF-8)
- node = SHA256(min(a, b) || max(a, b)) over the raw 32-byte digests

Tree shape:
- leaves are de-duplicated and sorted before building
- an odd trailing node is promoted unchanged to the next level
- a single-leaf tree has root == leaf

Only `verify_proof` sits on the engine's critical path. Building the tree is an
offline batch step (see `nexus allowlist build`).
"""

from __future__ import annotations

import csv
import hashlib
import pathlib
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Sequence

from tools.nexus.errors import InvalidRecipient
from tools.nexus.hardening import Validators, normalize_address, secure_compare_str


def _sha256(b: bytes) -> bytes:
    return hashlib.sha256(b).digest()


def _is_hex_32(s: Any) -> bool:
    return Validators.validate_digest(s).is_valid


def _strip(h: str) -> str:
    h = h.strip().lower()
    return h[2:] if h.startswith("0x") else h


def leaf_hash(address: str) -> str:
    """Compute the allow-list leaf for an address (64 hex chars)."""
    normalized = normalize_address(address)
    return _sha256(normalized.encode("utf-8")).hex()


def node_hash(a_hex: str, b_hex: str) -> str:
    """Combine two 32-byte digests with sorted-pair ordering."""
    if not _is_hex_32(a_hex) or not _is_hex_32(b_hex):
        raise ValueError("node inputs must be 64 hex chars")
    a = bytes.fromhex(_strip(a_hex))
    b = bytes.fromhex(_strip(b_hex))
    lo, hi = (a, b) if a <= b else (b, a)
    return _sha256(lo + hi).hex()


def verify_proof(root: str, leaf: str, proof: Sequence[str]) -> bool:
    """
    Recompute the root from `leaf` and `proof` and compare it to `root`.

    Never raises on malformed input; anything that cannot be parsed fails
    verification.
    """
    if not _is_hex_32(root) or not _is_hex_32(leaf):
        return False
    if proof is None or isinstance(proof, (str, bytes)):
        return False
    try:
        siblings = list(proof)
    except TypeError:
        return False

    cur = _strip(leaf)
    for sibling in siblings:
        if not _is_hex_32(sibling):
            return False
        cur = node_hash(cur, sibling)
    return secure_compare_str(cur, _strip(root))


@dataclass(frozen=True)
class AllowListTree:
    """An allow-list Merkle tree built from a set of addresses."""
    addresses: tuple  # normalized, sorted by leaf hash
    levels: tuple  # levels[0] = sorted leaves, levels[-1] = (root,)

    @classmethod
    def from_addresses(cls, addresses: Iterable[str]) -> "AllowListTree":
        by_leaf: Dict[str, str] = {}
        for raw in addresses:
            addr = normalize_address(raw)
            by_leaf[leaf_hash(addr)] = addr
        if not by_leaf:
            raise ValueError("cannot build an allow-list from an empty address set")

        leaves = sorted(by_leaf)
        levels: List[List[str]] = [leaves]
        level = leaves
        while len(level) > 1:
            nxt: List[str] = []
            for i in range(0, len(level), 2):
                if i + 1 < len(level):
                    nxt.append(node_hash(level[i], level[i + 1]))
                else:
                    nxt.append(level[i])
            levels.append(nxt)
            level = nxt

        return cls(
            addresses=tuple(by_leaf[lh] for lh in leaves),
            levels=tuple(tuple(lv) for lv in levels),
        )

    @property
    def root(self) -> str:
        return self.levels[-1][0]

    @property
    def size(self) -> int:
        return len(self.addresses)

    def __contains__(self, address: object) -> bool:
        try:
            return leaf_hash(address) in self.levels[0]  # type: ignore[arg-type]
        except InvalidRecipient:
            return False

    def proof(self, address: str) -> List[str]:
        """Sibling path for `address`, bottom to top."""
        lh = leaf_hash(address)
        try:
            pos = self.levels[0].index(lh)
        except ValueError:
            raise KeyError(f"address not in allow-list: {address}") from None
        return self._proof_at(pos)

    def _proof_at(self, pos: int) -> List[str]:
        path: List[str] = []
        for level in self.levels[:-1]:
            sibling_pos = pos ^ 1
            if sibling_pos < len(level):
                path.append(level[sibling_pos])
            pos //= 2
        return path

    def verify(self, address: str, proof: Sequence[str]) -> bool:
        try:
            lh = leaf_hash(address)
        except InvalidRecipient:
            return False
        return verify_proof(self.root, lh, proof)

    def to_dict(self) -> Dict[str, Any]:
        """Root plus one proof per address; the artifact handed to the mint site."""
        return {
            "hash": "sha256",
            "pairing": "sorted",
            "size": self.size,
            "root": self.root,
            "proofs": {addr: self._proof_at(pos) for pos, addr in enumerate(self.addresses)},
        }


def load_addresses(path: pathlib.Path) -> List[str]:
    """
    Read addresses from a CSV or newline-delimited file.

    The first column of each row is used. Blank lines, `#` comments and a
    header row whose first cell is "address" are skipped.
    """
    out: List[str] = []
    with open(path, "r", encoding="utf-8", newline="") as f:
        for row in csv.reader(f):
            if not row:
                continue
            cell = row[0].strip()
            if not cell or cell.startswith("#") or cell.lower() == "address":
                continue
            out.append(cell)
    return out
