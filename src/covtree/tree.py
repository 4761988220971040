"""Tree combinator: recursive generation of covariance expressions.

`Tree` grows one expression tree top-down. At every position it runs the
production kernel to pick a kind, generates each child position in turn
(depth first, left to right), and then runs the aggregation kernel on the
materialized children. The positions are integer addresses in heap order:

    root = 1            (or any caller-supplied root)
    child(a, i) = max_branch * (a - 1) + i + 2

so a proposal grown at root `k` records its choices at exactly the
addresses the model uses for the subtree at `k`.

Incremental generation (`regenerate`, `update`) resamples one whole
subtree. Everything outside it is reused by reference; ancestors of the
regenerated position keep their choices and are reassembled around the new
child. The returned weight is the score delta of the regenerated subtree.
"""

import logging
from dataclasses import dataclass

import jax.numpy as jnp
import jax.random as jrand
from beartype.typing import Any, Iterator

from covtree.core import (
    GFI,
    Changed,
    Const,
    Density,
    Diff,
    Initial,
    PRNGKey,
    Pytree,
    Score,
    Tr,
    Trace,
    Unchanged,
    Weight,
    get_choices,
)
from covtree.nodes import Node, NodeKind, StructuralDefectError

logger = logging.getLogger(__name__)

# address -> {"production": {...}, "aggregation": {...}}
TreeChoices = dict[int, dict[str, Any]]

#############
# Addresses #
#############


def child_address(address: int, i: int, max_branch: int) -> int:
    """Address of child `i` (0-based) of the node at `address`."""
    return max_branch * (address - 1) + i + 2


def parent_address(address: int, max_branch: int) -> int | None:
    if address <= 1:
        return None
    return (address - 2) // max_branch + 1


def child_index(address: int, max_branch: int) -> int:
    """Position of `address` among its parent's children."""
    return (address - 2) % max_branch


def is_descendant(address: int, ancestor: int, max_branch: int) -> bool:
    """True if `address` lies in the subtree rooted at `ancestor` (inclusive)."""
    while address > ancestor:
        address = parent_address(address, max_branch)  # pyright: ignore
    return address == ancestor


def address_path(address: int, root: int, max_branch: int) -> tuple[int, ...]:
    """Child indices leading from `root` down to `address`.

    Raises:
        ValueError: If `address` is not in the subtree rooted at `root`.
    """
    path = []
    a = address
    while a > root:
        path.append(child_index(a, max_branch))
        a = parent_address(a, max_branch)  # pyright: ignore
    if a != root:
        raise ValueError(f"Address {address} is not below root {root}")
    return tuple(reversed(path))


##########
# Traces #
##########


@Pytree.dataclass
class TreeTrace(Trace[TreeChoices, Node]):
    """Record of one tree generation.

    Per address, in depth-first pre-order: the production and aggregation
    sub-traces, the materialized node, and the log probability of every
    choice in the subtree rooted there.
    """

    gen_fn: "Tree"
    root: int = Pytree.static()
    productions: dict[int, Tr]
    aggregations: dict[int, Tr]
    nodes: dict[int, Node]
    subtree_scores: dict[int, Score]

    def get_gen_fn(self) -> "Tree":
        return self.gen_fn

    def get_choices(self) -> TreeChoices:
        return {
            addr: {
                "production": get_choices(self.productions[addr]),
                "aggregation": get_choices(self.aggregations[addr]),
            }
            for addr in self.productions
        }

    def get_args(self) -> tuple[int]:
        return (self.root,)

    def get_retval(self) -> Node:
        return self.nodes[self.root]

    def get_score(self) -> Score:
        return self.subtree_scores[self.root]

    def get_node(self, address: int) -> Node:
        return self.nodes[address]

    def get_kind(self, address: int) -> NodeKind:
        kind, _ = self.productions[address].get_retval()
        return kind

    def get_subtree_score(self, address: int) -> Score:
        return self.subtree_scores[address]

    def addresses(self) -> list[int]:
        return list(self.productions)

    def subtree_addresses(self, address: int) -> Iterator[int]:
        """Addresses of the subtree rooted at `address`, in pre-order."""
        return _preorder(address, self.productions, self.gen_fn.max_branch.value)


@Pytree.dataclass
class TreeRetDiff(Diff):
    """Retdiff of an incremental tree generation.

    `root` describes the returned root node. `children` maps the child
    indices of the node whose regeneration was requested to `Unchanged()`
    or `Changed(new_subtree)`; it is empty when nothing changed.
    """

    root: Diff
    children: dict[int, Diff]

    def has_changed(self) -> bool:
        return self.root.has_changed()


@dataclass
class _Frame:
    """A position whose kind is known and whose children are being grown."""

    address: int
    production: Tr
    children: list[Node]


@dataclass
class _Subtree:
    productions: dict[int, Tr]
    aggregations: dict[int, Tr]
    nodes: dict[int, Node]
    subtree_scores: dict[int, Score]


def _split(key: PRNGKey | None) -> tuple[PRNGKey | None, PRNGKey | None]:
    if key is None:
        return None, None
    key, sub_key = jrand.split(key)
    return key, sub_key


########
# Tree #
########


@Pytree.dataclass
class Tree(GFI[TreeChoices, Node]):
    """Generative function over covariance expression trees.

    Args:
        production: Generative function of no arguments returning
            `(kind, arity)`.
        aggregation: Generative function of `(kind, children)` returning
            the assembled node.
        max_branch: Maximum arity, which fixes the address numbering.

    The single argument of every GFI method is the root address.
    """

    production: GFI
    aggregation: GFI
    max_branch: Const[int]

    def _step(self, gen_fn: GFI, key: PRNGKey | None, x, *args):
        # Without a key the choices must be fully given, and nothing is sampled.
        if key is None:
            logp, retval = gen_fn.assess(x, *args)
            return Tr(gen_fn, (args, {}), x, retval, logp), logp
        return gen_fn.generate(key, x, *args)

    def _produce(
        self, key: PRNGKey | None, address: int, constraints: TreeChoices
    ) -> tuple[_Frame, Weight]:
        x = constraints.get(address, {}).get("production")
        if key is None and x is None:
            raise KeyError(f"Missing production choice at address {address}")
        try:
            tr, w = self._step(self.production, key, x)
        except StructuralDefectError as err:
            raise err.at(address) from err
        except ValueError as err:
            raise ValueError(
                f"Invalid production choices at address {address}: {err}"
            ) from err
        return _Frame(address, tr, []), w

    def _aggregate(
        self,
        key: PRNGKey | None,
        address: int,
        kind: NodeKind,
        children: tuple[Node, ...],
        constraints: TreeChoices,
    ) -> tuple[Tr, Weight]:
        x = constraints.get(address, {}).get("aggregation")
        if key is None and x is None:
            # Inputs and combinators make no aggregation choices.
            x = {}
        try:
            return self._step(self.aggregation, key, x, kind, children)
        except StructuralDefectError as err:
            raise err.at(address) from err
        except ValueError as err:
            raise ValueError(
                f"Invalid aggregation choices at address {address}: {err}"
            ) from err

    def _grow(
        self, key: PRNGKey | None, position: int, constraints: TreeChoices
    ) -> tuple[_Subtree, Weight]:
        """Generate the whole subtree at `position`.

        Each position moves from production, through its children (grown
        left to right on an explicit stack), to aggregation.
        """
        max_branch = self.max_branch.value
        out = _Subtree({}, {}, {}, {})
        key, sub_key = _split(key)
        frame, weight = self._produce(sub_key, position, constraints)
        out.productions[position] = frame.production
        stack = [frame]
        while True:
            frame = stack[-1]
            kind, arity = frame.production.get_retval()
            if len(frame.children) < arity:
                child = child_address(frame.address, len(frame.children), max_branch)
                key, sub_key = _split(key)
                child_frame, w = self._produce(sub_key, child, constraints)
                out.productions[child] = child_frame.production
                weight += w
                stack.append(child_frame)
                continue

            stack.pop()
            key, sub_key = _split(key)
            agg_tr, w = self._aggregate(
                sub_key, frame.address, kind, tuple(frame.children), constraints
            )
            weight += w
            out.aggregations[frame.address] = agg_tr
            out.nodes[frame.address] = agg_tr.get_retval()
            score = frame.production.get_score() + agg_tr.get_score()
            for i in range(arity):
                score += out.subtree_scores[
                    child_address(frame.address, i, max_branch)
                ]
            out.subtree_scores[frame.address] = score

            if not stack:
                return out, weight
            stack[-1].children.append(agg_tr.get_retval())

    def _as_trace(self, root: int, subtree: _Subtree) -> TreeTrace:
        return TreeTrace(
            self,
            root,
            subtree.productions,
            subtree.aggregations,
            subtree.nodes,
            subtree.subtree_scores,
        )

    def simulate(self, key: PRNGKey, root: int = 1) -> TreeTrace:
        subtree, _ = self._grow(key, root, {})
        return self._as_trace(root, subtree)

    def generate(
        self, key: PRNGKey, x: TreeChoices | None, root: int = 1
    ) -> tuple[TreeTrace, Weight]:
        if x is None:
            return self.simulate(key, root), jnp.array(0.0)
        subtree, weight = self._grow(key, root, x)
        self._check_constraints_used(x, subtree)
        return self._as_trace(root, subtree), weight

    def assess(self, x: TreeChoices, root: int = 1) -> tuple[Density, Node]:
        subtree, _ = self._grow(None, root, x)
        self._check_constraints_used(x, subtree)
        return subtree.subtree_scores[root], subtree.nodes[root]

    def regenerate(
        self, key: PRNGKey, tr: TreeTrace, position: int
    ) -> tuple[TreeTrace, Weight, TreeChoices, TreeRetDiff]:
        """Resample the whole subtree at `position`.

        Returns:
            A tuple (new_trace, weight, discard, retdiff) where `weight` is
            the new subtree's score minus the old subtree's score and
            `discard` holds every old choice under `position`.
        """
        self._check_position(tr, position)
        subtree, _ = self._grow(key, position, {})
        weight = subtree.subtree_scores[position] - tr.get_subtree_score(position)
        return self._splice(tr, position, subtree, weight)

    def update(
        self,
        key: PRNGKey,
        tr: TreeTrace | None,
        x_: TreeChoices | None,
        root: int = 1,
    ) -> tuple[TreeTrace, Weight, TreeChoices | None, Diff]:
        """Splice constrained choices into `tr`.

        The constrained addresses must form a single subtree (typically the
        choices of a proposal grown at that subtree's root). That subtree is
        regenerated under the constraints; choices it does not constrain are
        sampled fresh. The weight is the log probability of the constrained
        new choices minus the old subtree's score.

        When `tr` is None there is no previous trace: the tree is generated
        from scratch and the retdiff is `Initial()`.
        """
        if tr is None:
            new_tr, weight = self.generate(key, x_, root)
            return new_tr, weight, None, Initial()
        if root != tr.root:
            raise ValueError(
                f"Cannot move the root of a tree trace from {tr.root} to {root}"
            )
        if not x_:
            return tr, jnp.array(0.0), None, TreeRetDiff(Unchanged(), {})

        position = self._constrained_root(x_)
        self._check_position(tr, position)
        subtree, weight = self._grow(key, position, x_)
        self._check_constraints_used(x_, subtree)
        weight = weight - tr.get_subtree_score(position)
        return self._splice(tr, position, subtree, weight)

    def _check_position(self, tr: TreeTrace, position: int) -> None:
        if position not in tr.nodes:
            raise ValueError(
                f"Address {position} is not part of the tree rooted at {tr.root}; "
                f"known addresses: {tr.addresses()}"
            )

    def _constrained_root(self, x: TreeChoices) -> int:
        max_branch = self.max_branch.value
        roots = []
        for addr in x:
            parent = parent_address(addr, max_branch)
            while parent is not None and parent not in x:
                parent = parent_address(parent, max_branch)
            if parent is None:
                roots.append(addr)
        if len(roots) != 1:
            raise ValueError(
                f"Constraints must form a single subtree, found roots {sorted(roots)}"
            )
        return roots[0]

    def _check_constraints_used(self, x: TreeChoices, subtree: _Subtree) -> None:
        unused = [addr for addr in x if addr not in subtree.nodes]
        if unused:
            raise ValueError(
                f"Constrained addresses {sorted(unused)} are not part of the generated tree"
            )

    def _splice(
        self, tr: TreeTrace, position: int, subtree: _Subtree, weight: Weight
    ) -> tuple[TreeTrace, Weight, TreeChoices, TreeRetDiff]:
        """Merge a regenerated subtree at `position` into `tr`."""
        max_branch = self.max_branch.value
        old_addresses = list(tr.subtree_addresses(position))
        discard = {
            addr: {
                "production": get_choices(tr.productions[addr]),
                "aggregation": get_choices(tr.aggregations[addr]),
            }
            for addr in old_addresses
        }

        productions = dict(tr.productions)
        aggregations = dict(tr.aggregations)
        nodes = dict(tr.nodes)
        subtree_scores = dict(tr.subtree_scores)
        for addr in old_addresses:
            del productions[addr], aggregations[addr], nodes[addr]
            del subtree_scores[addr]
        productions.update(subtree.productions)
        aggregations.update(subtree.aggregations)
        nodes.update(subtree.nodes)
        subtree_scores.update(subtree.subtree_scores)

        # Ancestors keep their choices; only their nodes are reassembled.
        delta = subtree.subtree_scores[position] - tr.get_subtree_score(position)
        addr = parent_address(position, max_branch) if position != tr.root else None
        while addr is not None:
            kind = tr.get_kind(addr)
            children = tuple(
                nodes[child_address(addr, i, max_branch)] for i in range(kind.arity)
            )
            old_choices = {addr: {"aggregation": get_choices(tr.aggregations[addr])}}
            agg_tr, _ = self._aggregate(None, addr, kind, children, old_choices)
            aggregations[addr] = agg_tr
            nodes[addr] = agg_tr.get_retval()
            subtree_scores[addr] = tr.get_subtree_score(addr) + delta
            addr = parent_address(addr, max_branch) if addr != tr.root else None

        ordered = {a: productions[a] for a in _preorder(tr.root, productions, max_branch)}
        new_tr = TreeTrace(self, tr.root, ordered, aggregations, nodes, subtree_scores)

        if position == tr.root:
            children: dict[int, Diff] = {
                i: Changed(nodes[child_address(position, i, max_branch)])
                for i in range(new_tr.get_kind(position).arity)
            }
        else:
            parent = parent_address(position, max_branch)
            children = {}
            for i in range(tr.get_kind(parent).arity):  # pyright: ignore
                child = child_address(parent, i, max_branch)  # pyright: ignore
                children[i] = Changed(nodes[child]) if child == position else Unchanged()
        retdiff = TreeRetDiff(Changed(new_tr.get_retval()), children)

        logger.debug(
            "Regenerated subtree at %d (size %d -> %d), weight %.4f, discarded %d choices",
            position,
            tr.get_node(position).size,
            new_tr.get_node(position).size,
            float(weight),
            len(discard),
        )
        return new_tr, weight, discard, retdiff


def _preorder(
    address: int, productions: dict[int, Tr], max_branch: int
) -> Iterator[int]:
    stack = [address]
    while stack:
        a = stack.pop()
        yield a
        _, arity = productions[a].get_retval()
        stack.extend(child_address(a, i, max_branch) for i in reversed(range(arity)))
