"""Top-level covariance tree model and proposal.

`model` grows one tree at root address 1. `proposal` grows a tree at any
root, so its choices can be spliced into a model trace with
`model.update(key, trace, {"tree": proposal_trace.get_choices()["tree"]})`.
"""

from covtree.core import PRNGKey, Score, Tr, Weight, const, gen
from covtree.kernels import aggregation_kernel, production_kernel
from covtree.nodes import Node
from covtree.tree import Tree, TreeChoices, TreeRetDiff, TreeTrace

tree = Tree(production_kernel, aggregation_kernel, const(2))


@gen
def model():
    return tree(1) @ "tree"


@gen
def proposal(root: int):
    return tree(root) @ "tree"


def sample_tree(key: PRNGKey, root: int = 1) -> tuple[Node, Tr, Score]:
    """Grow one tree at `root`. Returns `(node, trace, score)`."""
    tr = proposal.simulate(key, root)
    return tr.get_retval(), tr, tr.get_score()


def regenerate_tree(
    key: PRNGKey, tr: Tr, position: int
) -> tuple[Node, Tr, Weight, dict[str, TreeChoices], TreeRetDiff]:
    """Resample the subtree at `position` of a `model` or `proposal` trace.

    Returns `(node, new_trace, weight, discard, retdiff)`, where `weight` is
    the score delta of the regenerated subtree.
    """
    subtrace = tr.get_subtrace("tree")
    assert isinstance(subtrace, TreeTrace)
    new_subtrace, weight, discard, retdiff = tree.regenerate(key, subtrace, position)
    new_tr = Tr(
        tr.get_gen_fn(),
        tr.get_args(),
        {"tree": new_subtrace},
        new_subtrace.get_retval(),
        new_subtrace.get_score(),
    )
    return new_tr.get_retval(), new_tr, weight, {"tree": discard}, retdiff
