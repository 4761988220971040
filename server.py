"""covtree MCP Server: sample and incrementally edit covariance expressions.

Every tool is deterministic given its seed. Set COVTREE_SEED to change the
default seed and COVTREE_MAX_SAMPLES to cap how many trees a single call
may sample.

Tools: sample_kernel_expressions, regenerate_subtree, propose_and_update,
evaluate_kernel_expression
Resources: covtree://model/node-kinds
"""

from __future__ import annotations

import logging
import os

import jax.random as jrand
from mcp.server.fastmcp import FastMCP

from covtree import (
    NODE_DIST,
    NodeKind,
    evaluate,
    model,
    proposal,
    regenerate_tree,
    to_expr,
)
from covtree.tree import TreeTrace

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_SEED = int(os.environ.get("COVTREE_SEED", "0"))
MAX_SAMPLES = int(os.environ.get("COVTREE_MAX_SAMPLES", "100"))

# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


def _format_choices(choices: dict[int, dict]) -> str:
    lines = []
    for addr, choice in choices.items():
        kind = NodeKind(int(choice["production"]["type"]))
        params = ", ".join(
            f"{name}={float(value):.4f}"
            for name, value in choice["aggregation"].items()
        )
        lines.append(f"  {addr}: {kind.name}" + (f" ({params})" if params else ""))
    return "\n".join(lines)


def _format_retdiff(retdiff) -> str:
    children = ", ".join(
        f"{i}: {type(d).__name__}" for i, d in sorted(retdiff.children.items())
    )
    return f"root {type(retdiff.root).__name__}, children {{{children}}}"


def _tree_trace(tr) -> TreeTrace:
    subtrace = tr.get_subtrace("tree")
    assert isinstance(subtrace, TreeTrace)
    return subtrace


# ---------------------------------------------------------------------------
# MCP Server
# ---------------------------------------------------------------------------

mcp = FastMCP("covtree")


@mcp.tool()
def sample_kernel_expressions(count: int = 5, seed: int | None = None) -> str:
    """Sample covariance expressions from the tree prior.

    Args:
        count: Number of trees to sample (capped by COVTREE_MAX_SAMPLES).
        seed: PRNG seed; defaults to COVTREE_SEED.

    Returns one line per tree with its expression, size and log probability.
    """
    if count < 1:
        return f"Error: count must be positive, got {count}"
    count = min(count, MAX_SAMPLES)
    seed = DEFAULT_SEED if seed is None else seed

    keys = jrand.split(jrand.key(seed), count)
    lines = [f"Sampled {count} covariance expression(s) with seed {seed}:"]
    for i in range(count):
        tr = model.simulate(keys[i])
        node = tr.get_retval()
        lines.append(
            f"{i}: {to_expr(node)}  (size {node.size}, log p {float(tr.get_score()):.4f})"
        )
    return "\n".join(lines)


@mcp.tool()
def regenerate_subtree(seed: int | None = None, position: int | None = None) -> str:
    """Sample a tree, then resample the subtree at one address.

    Args:
        seed: PRNG seed; defaults to COVTREE_SEED.
        position: Address to regenerate (root is 1, children of a are
            2a and 2a + 1). Defaults to a uniformly chosen existing address.
    """
    seed = DEFAULT_SEED if seed is None else seed
    key_model, key_position, key_regen = jrand.split(jrand.key(seed), 3)

    tr = model.simulate(key_model)
    addresses = _tree_trace(tr).addresses()
    if position is None:
        position = addresses[int(jrand.randint(key_position, (), 0, len(addresses)))]
    elif position not in addresses:
        return f"Error: address {position} is not in the sampled tree. Available: {addresses}"

    node, new_tr, weight, discard, retdiff = regenerate_tree(key_regen, tr, position)
    logger.info("Regenerated address %d with weight %.4f", position, float(weight))
    return "\n".join(
        [
            f"Previous tree: {to_expr(tr.get_retval())}",
            f"Regenerated address {position}",
            f"New tree: {to_expr(node)}",
            f"Weight: {float(weight):.4f}",
            f"Discarded addresses: {sorted(discard['tree'])}",
            f"Retdiff: {_format_retdiff(retdiff)}",
        ]
    )


@mcp.tool()
def propose_and_update(seed: int | None = None, root: int = 1) -> str:
    """Sample a tree, grow a proposal at `root`, and splice it in.

    The proposal's choices are used as constraints for `model.update`, so
    the subtree at `root` is replaced by the proposed one.

    Args:
        seed: PRNG seed; defaults to COVTREE_SEED.
        root: Address of the subtree to replace; must exist in the sampled tree.
    """
    seed = DEFAULT_SEED if seed is None else seed
    key_model, key_proposal, key_update = jrand.split(jrand.key(seed), 3)

    tr = model.simulate(key_model)
    if root not in _tree_trace(tr).addresses():
        return (
            f"Error: address {root} is not in the sampled tree. "
            f"Available: {_tree_trace(tr).addresses()}"
        )
    proposal_tr = proposal.simulate(key_proposal, root)
    proposed = proposal_tr.get_choices()["tree"]
    new_tr, weight, discard, retdiff = model.update(
        key_update, tr, {"tree": proposed}
    )

    return "\n".join(
        [
            "previous trace:",
            _format_choices(tr.get_choices()["tree"]),
            "",
            "proposal trace:",
            _format_choices(proposed),
            "",
            "new trace:",
            _format_choices(new_tr.get_choices()["tree"]),
            "",
            f"New tree: {to_expr(new_tr.get_retval())}",
            f"Weight: {float(weight):.4f}",
            f"Discarded addresses: {sorted(discard.get('tree', {}))}",
            f"Return value changed: {retdiff.has_changed()}",
        ]
    )


@mcp.tool()
def evaluate_kernel_expression(xs: list[float], seed: int | None = None) -> str:
    """Sample one covariance expression and evaluate it at each input.

    Args:
        xs: Scalar inputs, e.g. differences x1 - x2 between two points.
        seed: PRNG seed; defaults to COVTREE_SEED.
    """
    seed = DEFAULT_SEED if seed is None else seed
    node = model.simulate(jrand.key(seed)).get_retval()
    lines = [f"Expression: {to_expr(node)}"]
    lines.extend(f"k({x}) = {evaluate(node, float(x)):.6g}" for x in xs)
    return "\n".join(lines)


# --- Resources ---


@mcp.resource("covtree://model/node-kinds", name="node-kinds")
def node_kinds() -> str:
    lines = ["kind         arity  prior"]
    for kind in NodeKind:
        lines.append(f"{kind.name:<12} {kind.arity:<6} {float(NODE_DIST[kind.value]):.3f}")
    return "\n".join(lines)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    mcp.run()
