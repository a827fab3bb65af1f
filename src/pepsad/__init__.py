"""pepsad: differentiable bounded-rank contraction of finite PEPS networks in JAX.

Index-identity contraction (ITensor-style):
    Tensor legs carry Index objects with a unique identity, tags and a
    prime level. Two legs with the same Index on different tensors are
    contracted automatically when contract() is called.

.. note::
    Importing ``pepsad`` enables JAX 64-bit mode (``jax_enable_x64``).
    All tensors and algorithms default to ``float64``.

Quick start::

    import jax
    from pepsad import (
        ContractionContext, NetworkCache, PEPS, loss_grad_wrap, optimize,
        site_indices, tfim_terms,
    )

    sites = site_indices(2, 3)
    peps = PEPS.build(sites, linkdims=2, key=jax.random.PRNGKey(0))
    ctx = ContractionContext(cache=NetworkCache())
    loss_w_grad = loss_grad_wrap(peps, tfim_terms(2, 3, h=1.0), ctx)
    peps, losses = optimize(peps, loss_w_grad)
"""

import jax

jax.config.update("jax_enable_x64", True)

from pepsad.algorithms.models import (
    LocalTerm,
    heisenberg_terms,
    site_indices,
    spin_half_ops,
    tfim_terms,
)
from pepsad.algorithms.optimize import (
    ErrorRecord,
    OptimizeConfig,
    OptimizerMethod,
    gd_error_tracker,
    gradient_descent,
    loss_grad_wrap,
    optimize,
    polak_ribiere,
)
from pepsad.autodiff.cache import NetworkCache, topology_signature
from pepsad.autodiff.expression import (
    ContractionGraph,
    NodeKind,
    SymbolicNode,
    batch_tensor_contraction,
    evaluate,
    extract_network,
    generate_expression,
    gradient,
    value_and_grad,
)
from pepsad.autodiff.tape import Tape
from pepsad.contraction.contractor import (
    contract,
    contract_with_subscripts,
    qr_decompose,
    truncated_svd,
    truncation_rank,
)
from pepsad.contraction.strategies import (
    ContractionContext,
    ContractionStrategy,
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
from pepsad.core.exceptions import (
    IndexMismatch,
    MalformedNetwork,
    ScalarDegenerateNode,
    TensorNetworkError,
    TruncationInfeasible,
)
from pepsad.core.index import Index
from pepsad.core.tensor import DenseTensor
from pepsad.network.network import (
    Group,
    Leaf,
    LeafTensor,
    Network,
    SubNetwork,
    TensorArena,
    flatten,
    neighboring_tensors,
)
from pepsad.network.peps import (
    PEPS,
    inner_network,
    inner_networks,
    line_axis,
    line_network,
    line_tree,
    rayleigh_quotient,
    register,
    term_network,
)

__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",
    # Core
    "Index",
    "DenseTensor",
    "TensorNetworkError",
    "MalformedNetwork",
    "IndexMismatch",
    "ScalarDegenerateNode",
    "TruncationInfeasible",
    # Contraction
    "contract",
    "contract_with_subscripts",
    "truncated_svd",
    "truncation_rank",
    "qr_decompose",
    # Trees
    "BinaryTree",
    "TreeLeaf",
    "TreeNode",
    "CompressedNode",
    "build_tree",
    "contract_tree",
    "index_tree",
    "tree_approximation",
    "tree_from_nested",
    # Strategies
    "ContractionStrategy",
    "ContractionContext",
    "make_contractor",
    # Networks
    "LeafTensor",
    "TensorArena",
    "Leaf",
    "Group",
    "Network",
    "SubNetwork",
    "flatten",
    "neighboring_tensors",
    # Autodiff
    "Tape",
    "NodeKind",
    "SymbolicNode",
    "ContractionGraph",
    "generate_expression",
    "evaluate",
    "gradient",
    "extract_network",
    "batch_tensor_contraction",
    "value_and_grad",
    "NetworkCache",
    "topology_signature",
    # PEPS
    "PEPS",
    "register",
    "inner_network",
    "term_network",
    "inner_networks",
    "line_axis",
    "line_network",
    "line_tree",
    "rayleigh_quotient",
    # Models
    "spin_half_ops",
    "site_indices",
    "LocalTerm",
    "tfim_terms",
    "heisenberg_terms",
    # Optimization
    "OptimizerMethod",
    "OptimizeConfig",
    "ErrorRecord",
    "loss_grad_wrap",
    "gradient_descent",
    "optimize",
    "polak_ribiere",
    "gd_error_tracker",
]
