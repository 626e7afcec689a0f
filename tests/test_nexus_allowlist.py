"""
Allow-list Merkle tests.

Covers the SHA-256 sorted-pair tree: construction, proofs, verification of
members and non-members, tamper detection and the CSV loader.
"""

import hashlib

import pytest

from tools.nexus.allowlist import (
    AllowListTree,
    leaf_hash,
    load_addresses,
    node_hash,
    verify_proof,
)
from tools.nexus.errors import InvalidRecipient


def addr(n: int) -> str:
    return "0x" + format(n, "040x")


MEMBERS = [addr(i) for i in range(1, 8)]
OUTSIDER = addr(0xDEAD)


class TestHashing:
    """Leaf and node hashing conventions."""

    def test_leaf_is_sha256_of_lowercased_address(self):
        mixed = "0x" + "AbCdEf" * 6 + "0123"
        expected = hashlib.sha256(mixed.lower().encode("utf-8")).hexdigest()
        assert leaf_hash(mixed) == expected

    def test_leaf_case_insensitive(self):
        a = "0x" + "ab" * 20
        assert leaf_hash(a) == leaf_hash(a.upper().replace("0X", "0x"))

    def test_leaf_rejects_zero_address(self):
        with pytest.raises(InvalidRecipient):
            leaf_hash("0x" + "0" * 40)

    def test_leaf_rejects_malformed(self):
        with pytest.raises(InvalidRecipient):
            leaf_hash("not-an-address")

    def test_node_hash_is_order_independent(self):
        a = leaf_hash(MEMBERS[0])
        b = leaf_hash(MEMBERS[1])
        assert node_hash(a, b) == node_hash(b, a)

    def test_node_hash_sorts_raw_bytes(self):
        a = leaf_hash(MEMBERS[0])
        b = leaf_hash(MEMBERS[1])
        lo, hi = sorted([bytes.fromhex(a), bytes.fromhex(b)])
        assert node_hash(a, b) == hashlib.sha256(lo + hi).hexdigest()

    def test_node_hash_rejects_bad_input(self):
        with pytest.raises(ValueError):
            node_hash("zz", leaf_hash(MEMBERS[0]))


class TestAllowListTree:
    """Tree construction and proofs."""

    def test_single_leaf_root_is_leaf(self):
        tree = AllowListTree.from_addresses([MEMBERS[0]])
        assert tree.root == leaf_hash(MEMBERS[0])
        assert tree.proof(MEMBERS[0]) == []
        assert tree.verify(MEMBERS[0], [])

    def test_empty_set_rejected(self):
        with pytest.raises(ValueError):
            AllowListTree.from_addresses([])

    def test_duplicates_collapse(self):
        tree = AllowListTree.from_addresses(MEMBERS[:3] + [MEMBERS[0].upper().replace("0X", "0x")])
        assert tree.size == 3

    def test_root_independent_of_input_order(self):
        a = AllowListTree.from_addresses(MEMBERS)
        b = AllowListTree.from_addresses(list(reversed(MEMBERS)))
        assert a.root == b.root

    def test_every_member_verifies(self):
        tree = AllowListTree.from_addresses(MEMBERS)
        for member in MEMBERS:
            proof = tree.proof(member)
            assert verify_proof(tree.root, leaf_hash(member), proof)

    def test_odd_count_promotes_trailing_node(self):
        tree = AllowListTree.from_addresses(MEMBERS[:3])
        assert len(tree.levels) == 3
        # The promoted leaf has a single sibling on the way up
        lone = tree.levels[0][2]
        assert tree.levels[1][1] == lone

    def test_membership(self):
        tree = AllowListTree.from_addresses(MEMBERS)
        assert MEMBERS[3] in tree
        assert OUTSIDER not in tree
        assert "garbage" not in tree

    def test_proof_for_outsider_raises(self):
        tree = AllowListTree.from_addresses(MEMBERS)
        with pytest.raises(KeyError):
            tree.proof(OUTSIDER)

    def test_outsider_fails_with_member_proof(self):
        tree = AllowListTree.from_addresses(MEMBERS)
        proof = tree.proof(MEMBERS[0])
        assert not tree.verify(OUTSIDER, proof)

    def test_to_dict_artifact(self):
        tree = AllowListTree.from_addresses(MEMBERS)
        artifact = tree.to_dict()
        assert artifact["hash"] == "sha256"
        assert artifact["pairing"] == "sorted"
        assert artifact["root"] == tree.root
        assert artifact["size"] == len(MEMBERS)
        assert set(artifact["proofs"]) == set(MEMBERS)

    def test_artifact_proofs_match_per_address_proofs(self):
        tree = AllowListTree.from_addresses(MEMBERS)
        proofs = tree.to_dict()["proofs"]
        for member in MEMBERS:
            assert proofs[member] == tree.proof(member)

    def test_large_artifact_verifies(self):
        members = [addr(0x1000 + i) for i in range(5000)]
        tree = AllowListTree.from_addresses(members)
        artifact = tree.to_dict()
        assert artifact["size"] == 5000
        for member, proof in artifact["proofs"].items():
            assert verify_proof(artifact["root"], leaf_hash(member), proof)


class TestVerifyProof:
    """verify_proof never raises; bad input simply fails."""

    @pytest.fixture
    def tree(self):
        return AllowListTree.from_addresses(MEMBERS)

    def test_tampered_sibling_fails(self, tree):
        proof = tree.proof(MEMBERS[2])
        flipped = ("0" if proof[0][0] != "0" else "1") + proof[0][1:]
        assert not verify_proof(tree.root, leaf_hash(MEMBERS[2]), [flipped] + proof[1:])

    def test_truncated_proof_fails(self, tree):
        proof = tree.proof(MEMBERS[2])
        assert not verify_proof(tree.root, leaf_hash(MEMBERS[2]), proof[:-1])

    def test_wrong_root_fails(self, tree):
        proof = tree.proof(MEMBERS[2])
        assert not verify_proof("ab" * 32, leaf_hash(MEMBERS[2]), proof)

    def test_accepts_0x_prefixed_digests(self, tree):
        proof = ["0x" + p for p in tree.proof(MEMBERS[4])]
        assert verify_proof("0x" + tree.root, leaf_hash(MEMBERS[4]), proof)

    @pytest.mark.parametrize("bad", [None, "deadbeef", 42, ["xyz"], [b"\x00" * 32]])
    def test_malformed_proofs_fail(self, tree, bad):
        assert verify_proof(tree.root, leaf_hash(MEMBERS[0]), bad) is False

    def test_malformed_root_fails(self, tree):
        assert verify_proof("nope", leaf_hash(MEMBERS[0]), tree.proof(MEMBERS[0])) is False


class TestLoadAddresses:
    """CSV / newline address files."""

    def test_csv_with_header_and_comments(self, tmp_path):
        p = tmp_path / "presale.csv"
        p.write_text(
            "address,note\n"
            "# founding crew\n"
            f"{MEMBERS[0]},first\n"
            "\n"
            f"{MEMBERS[1]}\n",
            encoding="utf-8",
        )
        assert load_addresses(p) == [MEMBERS[0], MEMBERS[1]]

    def test_loaded_addresses_build_tree(self, tmp_path):
        p = tmp_path / "presale.csv"
        p.write_text("\n".join(MEMBERS) + "\n", encoding="utf-8")
        tree = AllowListTree.from_addresses(load_addresses(p))
        assert tree.root == AllowListTree.from_addresses(MEMBERS).root
