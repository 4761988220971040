"""Covariance function expression nodes.

A covariance function is an immutable tree of six node kinds: two leaves
(`InputSymbol`, `Constant`) and four binary nodes (`Plus`, `Minus`, `Times`,
`Changepoint`). Every node caches the size of its subtree, computed from
its children at construction; it is never passed in.

Evaluation treats the tree as a function of one scalar input:

    >>> from covtree.nodes import constant, evaluate, input_symbol, plus
    >>> evaluate(plus(input_symbol(), constant(1.5)), 3.0)
    4.5
"""

import enum
from abc import abstractmethod

from beartype.typing import ClassVar, Iterator, TypeAlias
from typing_extensions import assert_never

from covtree.core import Pytree


class NodeKind(enum.IntEnum):
    """The closed set of node kinds, in categorical outcome order."""

    INPUT = 0
    CONSTANT = 1
    PLUS = 2
    MINUS = 3
    TIMES = 4
    CHANGEPOINT = 5

    @property
    def arity(self) -> int:
        if self is NodeKind.INPUT or self is NodeKind.CONSTANT:
            return 0
        elif (
            self is NodeKind.PLUS
            or self is NodeKind.MINUS
            or self is NodeKind.TIMES
            or self is NodeKind.CHANGEPOINT
        ):
            return 2
        else:
            assert_never(self)

    @classmethod
    def coerce(cls, value) -> "NodeKind":
        """Convert a categorical outcome (int or scalar array) to a `NodeKind`.

        Raises:
            UnknownKindError: If the value is not an integer in the closed
                kind set. Booleans and fractional values are rejected rather
                than truncated.
        """
        if isinstance(value, NodeKind):
            return value
        unknown = UnknownKindError(
            f"Unknown node kind {value!r}; expected one of "
            f"{[k.value for k in cls]}",
            kind=value,
        )
        if isinstance(value, bool):
            raise unknown
        try:
            index = int(value)
            if index != value:
                raise unknown
            return cls(index)
        except (TypeError, ValueError):
            raise unknown from None


##########
# Errors #
##########


class StructuralDefectError(Exception):
    """A node kind and its children disagree, or a kind is unknown.

    These errors indicate broken wiring between the production and
    aggregation steps. They abort the current generation and are never
    recovered from. The message names the kind and, once known, the tree
    address where the defect happened.
    """

    def __init__(self, message: str, kind=None, address: int | None = None):
        self.message = message
        self.kind = kind
        self.address = address
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        kind = self.kind.name if isinstance(self.kind, NodeKind) else self.kind
        lines = [self.message, f"Kind: {kind}"]
        if self.address is not None:
            lines.append(f"Address: {self.address}")
        return "\n".join(lines)

    def at(self, address: int) -> "StructuralDefectError":
        """Return a copy of this error located at tree `address`."""
        return type(self)(self.message, kind=self.kind, address=address)


class ArityMismatchError(StructuralDefectError):
    pass


class UnknownKindError(StructuralDefectError):
    pass


#########
# Nodes #
#########


class CovarianceNode(Pytree):
    kind: ClassVar[NodeKind]

    @property
    @abstractmethod
    def children(self) -> "tuple[Node, ...]":
        pass

    def __str__(self) -> str:
        return to_expr(self)  # pyright: ignore


class BinaryCovarianceNode(CovarianceNode):
    """Base for nodes with a `left` and a `right` child."""

    def __post_init__(self):
        object.__setattr__(self, "size", 1 + self.left.size + self.right.size)

    @property
    def children(self) -> "tuple[Node, ...]":
        return (self.left, self.right)


@Pytree.dataclass
class InputSymbol(CovarianceNode):
    """The identity function of the scalar input."""

    kind: ClassVar[NodeKind] = NodeKind.INPUT
    size: int = Pytree.static(default=1, init=False)

    @property
    def children(self) -> "tuple[Node, ...]":
        return ()


@Pytree.dataclass
class Constant(CovarianceNode):
    value: float
    kind: ClassVar[NodeKind] = NodeKind.CONSTANT
    size: int = Pytree.static(default=1, init=False)

    @property
    def children(self) -> "tuple[Node, ...]":
        return ()


@Pytree.dataclass
class Plus(BinaryCovarianceNode):
    left: "Node"
    right: "Node"
    size: int = Pytree.static(init=False)
    kind: ClassVar[NodeKind] = NodeKind.PLUS


@Pytree.dataclass
class Minus(BinaryCovarianceNode):
    left: "Node"
    right: "Node"
    size: int = Pytree.static(init=False)
    kind: ClassVar[NodeKind] = NodeKind.MINUS


@Pytree.dataclass
class Times(BinaryCovarianceNode):
    left: "Node"
    right: "Node"
    size: int = Pytree.static(init=False)
    kind: ClassVar[NodeKind] = NodeKind.TIMES


@Pytree.dataclass
class Changepoint(BinaryCovarianceNode):
    """Selects `left` below `location` and `right` at or above it."""

    location: float
    left: "Node"
    right: "Node"
    size: int = Pytree.static(init=False)
    kind: ClassVar[NodeKind] = NodeKind.CHANGEPOINT


Node: TypeAlias = InputSymbol | Constant | Plus | Minus | Times | Changepoint
BinaryNode: TypeAlias = Plus | Minus | Times | Changepoint


def input_symbol() -> InputSymbol:
    return InputSymbol()


def constant(value: float) -> Constant:
    return Constant(value)


def plus(left: Node, right: Node) -> Plus:
    return Plus(left, right)


def minus(left: Node, right: Node) -> Minus:
    return Minus(left, right)


def times(left: Node, right: Node) -> Times:
    return Times(left, right)


def changepoint(location: float, left: Node, right: Node) -> Changepoint:
    return Changepoint(location, left, right)


def size(node: Node) -> int:
    """Number of nodes in the subtree rooted at `node`, including itself."""
    return node.size


def kind_of(node: Node) -> NodeKind:
    return node.kind


def nodes_preorder(node: Node) -> Iterator[Node]:
    """Iterate the subtree rooted at `node` in depth-first pre-order."""
    stack = [node]
    while stack:
        n = stack.pop()
        yield n
        stack.extend(reversed(n.children))


def evaluate(node: Node, x: float) -> float:
    """Evaluate the covariance expression at scalar input `x`.

    Runs on an explicit stack, so tree depth is not limited by Python's
    recursion limit. A changepoint visits only the branch selected by
    `x < location`.
    """
    values: list[float] = []
    # (node, children already evaluated)
    stack: list[tuple[Node, bool]] = [(node, False)]
    while stack:
        n, ready = stack.pop()
        if isinstance(n, InputSymbol):
            values.append(x)
        elif isinstance(n, Constant):
            values.append(n.value)
        elif isinstance(n, Changepoint):
            stack.append((n.left if x < n.location else n.right, False))
        elif isinstance(n, (Plus, Minus, Times)):
            if not ready:
                stack.append((n, True))
                stack.append((n.right, False))
                stack.append((n.left, False))
                continue
            b = values.pop()
            a = values.pop()
            if isinstance(n, Plus):
                values.append(a + b)
            elif isinstance(n, Minus):
                values.append(a - b)
            else:
                values.append(a * b)
        else:
            assert_never(n)
    (result,) = values
    return result


def to_expr(node: Node) -> str:
    """Render `node` as an infix expression, e.g. `(x + 1.5)`.

    Like `evaluate`, this walks an explicit stack instead of recursing.
    """
    parts: list[str] = []
    # (node, children already rendered)
    stack: list[tuple[Node, bool]] = [(node, False)]
    while stack:
        n, ready = stack.pop()
        if isinstance(n, InputSymbol):
            parts.append("x")
        elif isinstance(n, Constant):
            parts.append(f"{n.value:.4g}")
        elif isinstance(n, (Plus, Minus, Times, Changepoint)):
            if not ready:
                stack.append((n, True))
                stack.append((n.right, False))
                stack.append((n.left, False))
                continue
            right = parts.pop()
            left = parts.pop()
            if isinstance(n, Plus):
                parts.append(f"({left} + {right})")
            elif isinstance(n, Minus):
                parts.append(f"({left} - {right})")
            elif isinstance(n, Times):
                parts.append(f"({left} * {right})")
            else:
                parts.append(f"cp({n.location:.4g}, {left}, {right})")
        else:
            assert_never(n)
    (result,) = parts
    return result
