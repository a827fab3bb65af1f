"""Index-identity contraction, contraction trees and strategies."""

from pepsad.contraction.contractor import (
    contract,
    contract_with_subscripts,
    einsum_equation,
    qr_decompose,
    truncated_svd,
    truncation_rank,
)
from pepsad.contraction.strategies import (
    ContractionContext,
    ContractionStrategy,
    Contractor,
    ExactContractor,
    MPSContractor,
    TreeContractor,
    make_contractor,
)
from pepsad.contraction.tree import (
    BinaryTree,
    CompressedNode,
    TreeLeaf,
    TreeNode,
    build_tree,
    contract_tree,
    index_tree,
    tree_approximation,
    tree_from_nested,
)

__all__ = [
    "contract",
    "contract_with_subscripts",
    "einsum_equation",
    "truncated_svd",
    "truncation_rank",
    "qr_decompose",
    "BinaryTree",
    "TreeLeaf",
    "TreeNode",
    "CompressedNode",
    "build_tree",
    "contract_tree",
    "index_tree",
    "tree_approximation",
    "tree_from_nested",
    "ContractionStrategy",
    "ContractionContext",
    "Contractor",
    "ExactContractor",
    "TreeContractor",
    "MPSContractor",
    "make_contractor",
]
