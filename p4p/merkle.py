"""Merkle树工具 / Merkle tree over admitted submissions, used as the round's audit root."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Dict, List, Tuple


@dataclass
class MerkleNode:
    """Merkle树节点 / Node within a Merkle tree structure."""

    hash: str
    left: "MerkleNode | None" = None
    right: "MerkleNode | None" = None


class MerkleTree:
    """Merkle树构建与验证 / Commit to an ordered list of leaf hashes.

    Both servers build the tree from the same (peer id, proof fingerprint)
    pairs in peer-id order, so equal roots mean equal admitted sets.
    """

    def __init__(self, leaves: List[str]):
        self.leaves = list(leaves)
        self.root = self._build([MerkleNode(h) for h in self.leaves])

    @classmethod
    def for_admissions(cls, admitted: Dict[int, str]) -> "MerkleTree":
        return cls([cls.leaf_hash(peer_id, admitted[peer_id]) for peer_id in sorted(admitted)])

    @staticmethod
    def hash_item(item: str) -> str:
        return hashlib.sha256(item.encode()).hexdigest()

    @staticmethod
    def leaf_hash(peer_id: int, fingerprint: str) -> str:
        return MerkleTree.hash_item(f"leaf:{peer_id}:{fingerprint}")

    @staticmethod
    def _next_level(level: List[MerkleNode]) -> List[MerkleNode]:
        # 奇数个节点时复制最后一个以保证配对
        if len(level) % 2 == 1:
            level = level + [level[-1]]
        return [
            MerkleNode(MerkleTree.hash_item(level[i].hash + level[i + 1].hash), level[i], level[i + 1])
            for i in range(0, len(level), 2)
        ]

    def _build(self, nodes: List[MerkleNode]) -> MerkleNode:
        if not nodes:
            return MerkleNode("")
        while len(nodes) > 1:
            nodes = self._next_level(nodes)
        return nodes[0]

    def get_proof(self, index: int) -> List[Tuple[str, str]]:
        """认证路径 / Sibling hashes from leaf index up to the root, with their side."""
        if not 0 <= index < len(self.leaves):
            raise IndexError(f"leaf index {index} out of range")
        proof: List[Tuple[str, str]] = []
        idx = index
        level = [MerkleNode(h) for h in self.leaves]
        while len(level) > 1:
            if len(level) % 2 == 1:
                level = level + [level[-1]]
            position = "left" if idx % 2 else "right"
            proof.append((level[idx ^ 1].hash, position))
            idx //= 2
            level = self._next_level(level)
        return proof

    @staticmethod
    def verify_proof(leaf_hash: str, proof: List[Tuple[str, str]], root_hash: str) -> bool:
        computed_hash = leaf_hash
        for sibling_hash, position in proof:
            if position == "left":
                computed_hash = MerkleTree.hash_item(sibling_hash + computed_hash)
            else:
                computed_hash = MerkleTree.hash_item(computed_hash + sibling_hash)
        return computed_hash == root_hash
