import hashlib

import pytest

from shadowswap.field import ZERO
from shadowswap.merkle import (
    MerkleAccumulator,
    compute_root,
    generate_proof,
    hash_pair,
    padded_size,
    verify,
)


def _leaf(i: int) -> str:
    return "0x" + hashlib.sha256(f"leaf-{i}".encode("utf-8")).hexdigest()


def test_proofs_roundtrip_for_every_index():
    for n in [1, 2, 3, 4, 5, 7, 8, 9, 16, 17]:
        leaves = [_leaf(i) for i in range(n)]
        root = compute_root(leaves)
        for idx in range(n):
            proof = generate_proof(leaves, idx)
            assert len(proof) == padded_size(n).bit_length() - 1
            assert verify(leaves[idx], root, proof)


def test_pair_hash_is_order_independent():
    for i in range(10):
        a, b = _leaf(i), _leaf(i + 100)
        assert hash_pair(a, b) == hash_pair(b, a)


def test_empty_tree_root_is_zero():
    assert compute_root([]) == ZERO
    assert MerkleAccumulator().root == ZERO


def test_single_leaf_is_hashed_against_zero_sibling():
    leaf = _leaf(1)
    root = compute_root([leaf])
    assert root != leaf
    assert root == hash_pair(leaf, ZERO)
    assert generate_proof([leaf], 0) == [ZERO]
    assert verify(leaf, root, [ZERO])


def test_padding_to_power_of_two():
    assert padded_size(0) == 2
    assert padded_size(1) == 2
    assert padded_size(3) == 4
    assert padded_size(5) == 8
    leaves = [_leaf(i) for i in range(3)]
    assert compute_root(leaves) == compute_root(leaves + [ZERO])


def test_out_of_range_index_raises():
    leaves = [_leaf(i) for i in range(3)]
    with pytest.raises(ValueError):
        generate_proof(leaves, 3)
    with pytest.raises(ValueError):
        generate_proof(leaves, -1)


def test_tampered_proof_fails():
    leaves = [_leaf(i) for i in range(9)]
    root = compute_root(leaves)
    proof = generate_proof(leaves, 3)
    assert verify(leaves[3], root, proof)

    tampered = list(proof)
    tampered[0] = "0x" + "11" * 32
    assert not verify(leaves[3], root, tampered)
    assert not verify(leaves[4], root, proof)


def test_malformed_inputs_never_raise():
    leaves = [_leaf(i) for i in range(4)]
    root = compute_root(leaves)
    proof = generate_proof(leaves, 0)

    assert not verify(leaves[0], root, [])
    assert not verify(leaves[0], root, ["not-hex"] + proof[1:])
    assert not verify(leaves[0], root, [None])
    assert not verify(leaves[0], "0x1234", proof)
    assert not verify(12345, root, proof)
    assert not verify(leaves[0], root, "0x" + "00" * 32)


def test_accumulator_matches_free_functions():
    acc = MerkleAccumulator()
    leaves = [_leaf(i) for i in range(6)]
    for i, leaf in enumerate(leaves):
        assert acc.append(leaf) == i
        assert acc.root == compute_root(leaves[: i + 1])

    assert acc.size == 6
    assert len(acc) == 6
    assert acc.leaves == leaves
    assert acc.index_of(leaves[4]) == 4
    assert leaves[2] in acc
    assert acc.proof(2) == generate_proof(leaves, 2)
    assert acc.proof_for(leaves[5]) == generate_proof(leaves, 5)

    with pytest.raises(ValueError):
        acc.index_of(_leaf(99))


def test_accumulator_leaves_view_is_a_copy():
    acc = MerkleAccumulator([_leaf(0)])
    view = acc.leaves
    view.append(_leaf(1))
    assert acc.size == 1


def test_prefix_reproduces_historical_root():
    acc = MerkleAccumulator()
    roots = []
    for i in range(5):
        acc.append(_leaf(i))
        roots.append(acc.root)

    for size in range(1, 6):
        old = acc.prefix(size)
        assert old.root == roots[size - 1]
        assert verify(_leaf(0), roots[size - 1], old.proof(0))

    with pytest.raises(ValueError):
        acc.prefix(6)


def test_truncate_restores_earlier_tree():
    acc = MerkleAccumulator([_leaf(0), _leaf(1)])
    before = acc.root
    acc.append(_leaf(2))
    acc.append(_leaf(0))
    acc.truncate(2)
    assert acc.size == 2
    assert acc.root == before == compute_root([_leaf(0), _leaf(1)])
    assert acc.index_of(_leaf(0)) == 0
    assert _leaf(2) not in acc
    with pytest.raises(ValueError):
        acc.truncate(3)


def test_leaves_are_normalized_to_lowercase():
    upper = "0x" + "AB" * 32
    acc = MerkleAccumulator()
    acc.append(upper)
    assert acc.leaves == [upper.lower()]
    assert upper in acc


@pytest.mark.slow
def test_accumulator_proofs_for_every_size_up_to_64():
    acc = MerkleAccumulator()
    leaves = []
    for n in range(1, 65):
        leaves.append(_leaf(n))
        acc.append(leaves[-1])
        root = compute_root(leaves)
        assert acc.root == root
        for idx in range(n):
            proof = acc.proof(idx)
            assert proof == generate_proof(leaves, idx)
            assert verify(leaves[idx], root, proof)
        assert not verify(_leaf(1000), root, acc.proof(0))
