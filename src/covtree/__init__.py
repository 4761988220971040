"""covtree: incremental generation of Gaussian Process covariance expressions.

Covariance functions are grown as expression trees by a recursive
generative process (a production step choosing each node's kind, an
aggregation step assembling it from its children) and can be partially
regenerated: only the targeted subtree is resampled and rescored.
"""

from .core import (
    GFI,
    Changed,
    Const,
    Diff,
    Distribution,
    Fn,
    Initial,
    Pytree,
    Tr,
    Trace,
    Unchanged,
    const,
    distribution,
    gen,
    get_choices,
    get_retval,
    get_score,
    tfp_distribution,
)
from .distributions import categorical, normal
from .kernels import NODE_DIST, PARAM_STD, aggregation_kernel, production_kernel
from .model import model, proposal, regenerate_tree, sample_tree, tree
from .nodes import (
    ArityMismatchError,
    Changepoint,
    Constant,
    InputSymbol,
    Minus,
    Node,
    NodeKind,
    Plus,
    StructuralDefectError,
    Times,
    UnknownKindError,
    changepoint,
    constant,
    evaluate,
    input_symbol,
    kind_of,
    minus,
    nodes_preorder,
    plus,
    size,
    times,
    to_expr,
)
from .tree import (
    Tree,
    TreeRetDiff,
    TreeTrace,
    address_path,
    child_address,
    is_descendant,
    parent_address,
)

__all__ = [
    # Core
    "GFI",
    "Changed",
    "Const",
    "Diff",
    "Distribution",
    "Fn",
    "Initial",
    "Pytree",
    "Tr",
    "Trace",
    "Unchanged",
    "const",
    "distribution",
    "gen",
    "get_choices",
    "get_retval",
    "get_score",
    "tfp_distribution",
    # Distributions
    "categorical",
    "normal",
    # Nodes
    "ArityMismatchError",
    "Changepoint",
    "Constant",
    "InputSymbol",
    "Minus",
    "Node",
    "NodeKind",
    "Plus",
    "StructuralDefectError",
    "Times",
    "UnknownKindError",
    "changepoint",
    "constant",
    "evaluate",
    "input_symbol",
    "kind_of",
    "minus",
    "nodes_preorder",
    "plus",
    "size",
    "times",
    "to_expr",
    # Kernels
    "NODE_DIST",
    "PARAM_STD",
    "aggregation_kernel",
    "production_kernel",
    # Tree
    "Tree",
    "TreeRetDiff",
    "TreeTrace",
    "address_path",
    "child_address",
    "is_descendant",
    "parent_address",
    # Model
    "model",
    "proposal",
    "regenerate_tree",
    "sample_tree",
    "tree",
]
