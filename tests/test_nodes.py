"""
Test cases for covariance expression nodes.

These tests validate:
- Node construction and cached subtree sizes
- Evaluation, including changepoint short-circuiting and deep trees
- Expression rendering
- Node kinds and structural defect errors
"""

import jax
import pytest

from covtree.nodes import (
    ArityMismatchError,
    Changepoint,
    Constant,
    InputSymbol,
    NodeKind,
    Plus,
    StructuralDefectError,
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


class Poison:
    """A value that fails any arithmetic performed on it."""

    def __add__(self, other):
        raise AssertionError("untaken branch was evaluated")

    __radd__ = __sub__ = __rsub__ = __mul__ = __rmul__ = __add__


def poisoned() -> Plus:
    return plus(constant(Poison()), input_symbol())


# =============================================================================
# CONSTRUCTION TESTS
# =============================================================================


@pytest.mark.unit
@pytest.mark.fast
def test_leaf_sizes():
    assert size(input_symbol()) == 1
    assert size(constant(2.0)) == 1


@pytest.mark.unit
@pytest.mark.fast
def test_binary_size_is_one_plus_children():
    left = plus(input_symbol(), constant(1.0))
    right = times(constant(2.0), minus(input_symbol(), constant(3.0)))
    for make in (plus, minus, times):
        node = make(left, right)
        assert node.size == 1 + left.size + right.size == 9
    cp = changepoint(0.5, left, right)
    assert cp.size == 9
    assert cp.location == 0.5


@pytest.mark.unit
@pytest.mark.fast
def test_raw_constructors_compute_size():
    leaf = input_symbol()
    assert Plus(leaf, leaf).size == 3
    assert Changepoint(0.0, Plus(leaf, leaf), constant(1.0)).size == 5
    assert InputSymbol().size == 1
    assert Constant(2.0).size == 1

    with pytest.raises(TypeError):
        Plus(leaf, leaf, 7)
    with pytest.raises(TypeError):
        Constant(2.0, 4)


@pytest.mark.unit
@pytest.mark.fast
def test_size_survives_tree_map():
    node = changepoint(0.5, plus(input_symbol(), constant(1.0)), constant(2.0))
    mapped = jax.tree_util.tree_map(lambda v: v * 2, node)
    assert mapped.size == node.size == 5
    assert mapped.location == 1.0
    assert mapped.left.size == 3


@pytest.mark.unit
@pytest.mark.fast
def test_kind_of_and_children():
    left, right = input_symbol(), constant(1.0)
    assert kind_of(left) is NodeKind.INPUT
    assert kind_of(right) is NodeKind.CONSTANT
    assert kind_of(plus(left, right)) is NodeKind.PLUS
    assert kind_of(minus(left, right)) is NodeKind.MINUS
    assert kind_of(times(left, right)) is NodeKind.TIMES
    assert kind_of(changepoint(0.0, left, right)) is NodeKind.CHANGEPOINT

    node = plus(left, right)
    assert node.children == (left, right)
    assert node.children[0] is left
    assert left.children == ()


@pytest.mark.unit
@pytest.mark.fast
def test_nodes_preorder():
    a, b, c = input_symbol(), constant(1.0), constant(2.0)
    inner = times(b, c)
    root = plus(a, inner)
    assert list(nodes_preorder(root)) == [root, a, inner, b, c]


# =============================================================================
# EVALUATION TESTS
# =============================================================================


@pytest.mark.unit
@pytest.mark.fast
def test_evaluate_leaves_and_operators():
    x = input_symbol()
    assert evaluate(x, 3.0) == 3.0
    assert evaluate(constant(-1.25), 3.0) == -1.25
    assert evaluate(plus(x, constant(1.5)), 3.0) == 4.5
    assert evaluate(minus(x, constant(1.5)), 3.0) == 1.5
    assert evaluate(times(x, constant(1.5)), 3.0) == 4.5
    assert evaluate(minus(constant(1.0), x), 3.0) == -2.0


@pytest.mark.unit
@pytest.mark.fast
def test_evaluate_changepoint_selects_branch():
    cp = changepoint(0.0, constant(1.0), constant(2.0))
    assert evaluate(cp, -1.0) == 1.0
    # The location itself belongs to the right branch.
    assert evaluate(cp, 0.0) == 2.0
    assert evaluate(cp, 5.0) == 2.0


@pytest.mark.unit
@pytest.mark.fast
def test_evaluate_changepoint_skips_untaken_branch():
    with pytest.raises(AssertionError):
        evaluate(poisoned(), 1.0)

    left_taken = changepoint(0.0, constant(1.0), poisoned())
    assert evaluate(left_taken, -1.0) == 1.0

    right_taken = changepoint(0.0, poisoned(), plus(input_symbol(), constant(2.0)))
    assert evaluate(right_taken, 1.0) == 3.0


@pytest.mark.unit
@pytest.mark.fast
def test_evaluate_nested_expression():
    # ((x * 0.5) + cp(0.0, x, 2.0))
    node = plus(
        times(input_symbol(), constant(0.5)),
        changepoint(0.0, input_symbol(), constant(2.0)),
    )
    assert evaluate(node, -2.0) == -3.0
    assert evaluate(node, 4.0) == 4.0


@pytest.mark.unit
def test_evaluate_deep_tree():
    depth = 5000
    node = input_symbol()
    for _ in range(depth):
        node = plus(constant(1.0), node)
    assert node.size == 2 * depth + 1
    assert evaluate(node, 0.5) == depth + 0.5
    assert sum(1 for _ in nodes_preorder(node)) == node.size


@pytest.mark.unit
def test_to_expr_deep_tree():
    depth = 3000
    node = input_symbol()
    for _ in range(depth):
        node = plus(constant(1.0), node)
    expr = to_expr(node)
    assert expr == "(1 + " * depth + "x" + ")" * depth
    assert str(node) == expr


# =============================================================================
# RENDERING TESTS
# =============================================================================


@pytest.mark.unit
@pytest.mark.fast
def test_to_expr():
    node = plus(
        times(input_symbol(), constant(0.5)),
        changepoint(0.25, minus(input_symbol(), constant(1.0)), constant(2.0)),
    )
    assert to_expr(node) == "((x * 0.5) + cp(0.25, (x - 1), 2))"
    assert str(node) == to_expr(node)


# =============================================================================
# KIND AND ERROR TESTS
# =============================================================================


@pytest.mark.unit
@pytest.mark.fast
def test_node_kind_arity():
    assert NodeKind.INPUT.arity == 0
    assert NodeKind.CONSTANT.arity == 0
    for kind in (NodeKind.PLUS, NodeKind.MINUS, NodeKind.TIMES, NodeKind.CHANGEPOINT):
        assert kind.arity == 2
    assert [k.value for k in NodeKind] == [0, 1, 2, 3, 4, 5]


@pytest.mark.unit
@pytest.mark.fast
def test_node_kind_coerce():
    assert NodeKind.coerce(NodeKind.TIMES) is NodeKind.TIMES
    assert NodeKind.coerce(5) is NodeKind.CHANGEPOINT

    with pytest.raises(UnknownKindError) as exc_info:
        NodeKind.coerce(9)
    assert exc_info.value.kind == 9
    assert "Unknown node kind 9" in str(exc_info.value)

    assert NodeKind.coerce(2.0) is NodeKind.PLUS
    for value in (2.7, -0.5, True, False, "2", None):
        with pytest.raises(UnknownKindError):
            NodeKind.coerce(value)


@pytest.mark.unit
@pytest.mark.fast
def test_structural_defect_error_message():
    err = ArityMismatchError("Expected 2 children, got 1", kind=NodeKind.PLUS)
    assert isinstance(err, StructuralDefectError)
    assert "Kind: PLUS" in str(err)
    assert "Address" not in str(err)

    located = err.at(6)
    assert isinstance(located, ArityMismatchError)
    assert located.address == 6
    assert located.kind is NodeKind.PLUS
    assert str(located).splitlines() == [
        "Expected 2 children, got 1",
        "Kind: PLUS",
        "Address: 6",
    ]


@pytest.mark.unit
@pytest.mark.fast
def test_node_classes():
    assert isinstance(input_symbol(), InputSymbol)
    assert isinstance(constant(1.0), Constant)
    assert isinstance(changepoint(0.0, input_symbol(), input_symbol()), Changepoint)
    assert constant(1.0).value == 1.0
