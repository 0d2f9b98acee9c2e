"""Merkle accumulator for commitment and fill trees.

This module implements the **append-only accumulator** both ledgers use, plus
the off-ledger mirror the relayer keeps. All three participants (ledger,
proof generator, verifier) share the functions below, so their results are
bit-identical.

Hashing rule (HASH_RULE_VERSION = "sorted-pair/v1"):
- node = hash_fields(min(a, b), max(a, b))   (canonical pair hash)
- leaves are used as-is (32-byte hex values)
- the zero value 0x00..00 pads the leaf list to max(2, next power of two)

Because pair hashing is order independent, proofs are a flat list of sibling
hashes; the verifier never needs left/right flags or the leaf index.

Edge cases:
- empty tree: root is the zero value
- one leaf: hashed against a zero sibling, never exposed raw as the root
"""

from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional, Sequence

from shadowswap.field import ZERO, hash_fields, to_int
from shadowswap.hardening import BridgeError, CryptoUtils, Validators

HASH_RULE_VERSION = "sorted-pair/v1"


def _norm(value: str) -> str:
    return Validators.bytes32(value, "leaf")


def hash_pair(a: str, b: str) -> str:
    """Order-independent 2-input hash: H(min(a,b), max(a,b))."""
    ia, ib = to_int(a), to_int(b)
    if ia <= ib:
        return hash_fields(ia, ib)
    return hash_fields(ib, ia)


def padded_size(n: int) -> int:
    """Leaf count after zero padding: max(2, next power of two)."""
    if n < 0:
        raise ValueError("size must be >= 0")
    size = 2
    while size < n:
        size <<= 1
    return size


def _padded_layer(leaves: Sequence[str]) -> List[str]:
    layer = [_norm(x) for x in leaves]
    layer.extend([ZERO] * (padded_size(len(layer)) - len(layer)))
    return layer


def _fold(layer: List[str]) -> List[str]:
    return [hash_pair(layer[i], layer[i + 1]) for i in range(0, len(layer), 2)]


def compute_root(leaves: Sequence[str]) -> str:
    """Compute the root of a leaf list (insertion order)."""
    if not leaves:
        return ZERO
    layer = _padded_layer(leaves)
    while len(layer) > 1:
        layer = _fold(layer)
    return layer[0]


def generate_proof(leaves: Sequence[str], index: int) -> List[str]:
    """Sibling path for `leaves[index]`, bottom-up.

    Proof length is log2(padded_size(len(leaves))).
    """
    if index < 0 or index >= len(leaves):
        raise ValueError("index out of range")

    layer = _padded_layer(leaves)
    pos = index
    proof: List[str] = []
    while len(layer) > 1:
        proof.append(layer[pos ^ 1])
        layer = _fold(layer)
        pos //= 2
    return proof


def verify(leaf: str, root: str, proof: Sequence[str]) -> bool:
    """Verify an inclusion proof produced by generate_proof().

    Never raises on malformed input; malformed proofs simply do not verify.
    """
    try:
        cur = _norm(leaf)
        expected = _norm(root)
        if not isinstance(proof, (list, tuple)) or not proof:
            return False
        for sibling in proof:
            cur = hash_pair(cur, _norm(sibling))
    except (BridgeError, TypeError, ValueError):
        return False
    return CryptoUtils.secure_compare_str(cur, expected)


class MerkleAccumulator:
    """
    Append-only leaf list with root and proof views.

    Leaf order is insertion order; indices are stable and never reused.
    The root is cached and recomputed lazily after appends.
    """

    def __init__(self, leaves: Optional[Sequence[str]] = None):
        self._leaves: List[str] = [_norm(x) for x in (leaves or [])]
        self._index: Dict[str, int] = {}
        for i, leaf in enumerate(self._leaves):
            self._index.setdefault(leaf, i)
        self._root: Optional[str] = None
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._leaves)

    def __contains__(self, leaf: object) -> bool:
        return isinstance(leaf, str) and leaf.strip().lower() in self._index

    @property
    def size(self) -> int:
        return len(self._leaves)

    @property
    def leaves(self) -> List[str]:
        with self._lock:
            return list(self._leaves)

    @property
    def root(self) -> str:
        with self._lock:
            if self._root is None:
                self._root = compute_root(self._leaves)
            return self._root

    def append(self, leaf: str) -> int:
        """Append a leaf and return its index."""
        leaf = _norm(leaf)
        with self._lock:
            index = len(self._leaves)
            self._leaves.append(leaf)
            self._index.setdefault(leaf, index)
            self._root = None
            return index

    def truncate(self, size: int) -> None:
        """Drop leaves at index >= `size`. Used only to roll back a failed transition."""
        with self._lock:
            if size < 0 or size > len(self._leaves):
                raise ValueError("size out of range")
            for index in range(size, len(self._leaves)):
                leaf = self._leaves[index]
                if self._index.get(leaf) == index:
                    del self._index[leaf]
            del self._leaves[size:]
            self._root = None

    def index_of(self, leaf: str) -> int:
        """Index of the first occurrence of `leaf`; ValueError if absent."""
        try:
            return self._index[_norm(leaf)]
        except KeyError:
            raise ValueError("leaf not in tree") from None

    def proof(self, index: int) -> List[str]:
        with self._lock:
            return generate_proof(self._leaves, index)

    def proof_for(self, leaf: str) -> List[str]:
        return self.proof(self.index_of(leaf))

    def prefix(self, size: int) -> "MerkleAccumulator":
        """Accumulator over the first `size` leaves (the tree as it was then)."""
        if size < 0 or size > len(self._leaves):
            raise ValueError("size out of range")
        return MerkleAccumulator(self._leaves[:size])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "size": self.size,
            "root": self.root,
            "hash_rule": HASH_RULE_VERSION,
        }
