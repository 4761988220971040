"""Production and aggregation kernels of the covariance tree.

The production kernel decides which kind of node occupies a tree position,
knowing nothing about its content. The aggregation kernel receives that kind
together with the already generated child subtrees and assembles the
concrete node, drawing any node-local parameter.
"""

import jax.numpy as jnp
from typing_extensions import assert_never

from covtree.core import gen
from covtree.distributions import categorical, normal
from covtree.nodes import (
    ArityMismatchError,
    Constant,
    InputSymbol,
    Node,
    NodeKind,
    changepoint,
    minus,
    plus,
    times,
)

# Prior over node kinds, in `NodeKind` order. The four operators split 0.2.
NODE_DIST = jnp.array([0.4, 0.4, 0.2 / 4, 0.2 / 4, 0.2 / 4, 0.2 / 4])

# Standard deviation of the zero-mean normal prior on constants and
# changepoint locations.
PARAM_STD = 3.0


@gen
def production_kernel():
    """Choose the kind of node at one tree position.

    Every position has the same prior, so the kernel takes no arguments.
    Returns `(kind, arity)`; the arity is a function of the kind.
    """
    node_type = categorical(jnp.log(NODE_DIST)) @ "type"
    kind = NodeKind.coerce(node_type)
    return kind, kind.arity


@gen
def aggregation_kernel(kind, children: tuple[Node, ...]) -> Node:
    """Assemble the node for `kind` from its materialized children.

    Constants draw their value at `"const"` and changepoints their location
    at `"changept"`. Combinators take ownership of `children` as they are.

    Raises:
        ArityMismatchError: If `len(children)` differs from the kind's arity.
        UnknownKindError: If `kind` is outside the closed kind set.
    """
    kind = NodeKind.coerce(kind)
    if len(children) != kind.arity:
        raise ArityMismatchError(
            f"Expected {kind.arity} children, got {len(children)}", kind=kind
        )

    if kind is NodeKind.INPUT:
        return InputSymbol()
    elif kind is NodeKind.CONSTANT:
        value = normal(0.0, PARAM_STD) @ "const"
        return Constant(float(value))
    elif kind is NodeKind.PLUS:
        return plus(*children)
    elif kind is NodeKind.MINUS:
        return minus(*children)
    elif kind is NodeKind.TIMES:
        return times(*children)
    elif kind is NodeKind.CHANGEPOINT:
        loc = normal(0.0, PARAM_STD) @ "changept"
        return changepoint(float(loc), *children)
    else:
        assert_never(kind)
