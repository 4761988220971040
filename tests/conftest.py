"""
Shared fixtures and configuration for the covtree test suite.
"""

import jax.numpy as jnp
import jax.random as jrand
import pytest

from covtree import NodeKind


# ============================================================================
# Random Key Fixtures
# ============================================================================


@pytest.fixture
def base_key():
    """Base random key for reproducible tests."""
    return jrand.key(42)


@pytest.fixture
def key_sequence(base_key):
    """Sequence of 10 split random keys."""
    return jrand.split(base_key, 10)


# ============================================================================
# Test Tolerance Fixtures
# ============================================================================


@pytest.fixture
def standard_tolerance():
    """Standard tolerance for most numerical tests."""
    return 1e-5


@pytest.fixture
def convergence_tolerance():
    """Tolerance for empirical frequencies with inherent variance."""
    return 0.02


# ============================================================================
# Tree Fixtures
# ============================================================================


def choice(kind: NodeKind, **params):
    """Constraint for one tree address."""
    return {"production": {"type": int(kind)}, "aggregation": params}


@pytest.fixture
def plus_choices():
    """(x + 1.5): Plus at 1, Input at 2, Constant(1.5) at 3."""
    return {
        1: choice(NodeKind.PLUS),
        2: choice(NodeKind.INPUT),
        3: choice(NodeKind.CONSTANT, const=1.5),
    }


@pytest.fixture
def seven_node_choices():
    """((x * 0.5) + cp(0.0, x, 2.0)) laid out over addresses 1..7."""
    return {
        1: choice(NodeKind.PLUS),
        2: choice(NodeKind.TIMES),
        4: choice(NodeKind.INPUT),
        5: choice(NodeKind.CONSTANT, const=0.5),
        3: choice(NodeKind.CHANGEPOINT, changept=0.0),
        6: choice(NodeKind.INPUT),
        7: choice(NodeKind.CONSTANT, const=2.0),
    }


# ============================================================================
# Test Utilities
# ============================================================================


class TestHelpers:
    """Collection of helper methods for tests."""

    @staticmethod
    def assert_finite_and_close(actual, expected, rtol=1e-5, atol=1e-6, msg=""):
        """Assert that values are finite and close to expected."""
        assert jnp.all(jnp.isfinite(actual)), f"Values not finite: {actual} {msg}"
        assert jnp.allclose(actual, expected, rtol=rtol, atol=atol), (
            f"{actual} != {expected} (rtol={rtol}) {msg}"
        )

    @staticmethod
    def assert_valid_trace(trace):
        """Assert that a trace has valid structure and a finite score."""
        assert hasattr(trace, "get_choices"), "Trace missing get_choices method"
        assert hasattr(trace, "get_score"), "Trace missing get_score method"
        assert hasattr(trace, "get_retval"), "Trace missing get_retval method"

        score = trace.get_score()
        assert jnp.isfinite(score), f"Trace score not finite: {score}"


@pytest.fixture
def helpers():
    """Test helper utilities."""
    return TestHelpers()


# ============================================================================
# Pytest Hooks and Configuration
# ============================================================================


def pytest_collection_modifyitems(config, items):
    """Add markers based on test file names."""
    for item in items:
        if "test_core" in item.fspath.basename:
            item.add_marker(pytest.mark.core)
        elif "test_nodes" in item.fspath.basename:
            item.add_marker(pytest.mark.nodes)
        elif "test_tree" in item.fspath.basename:
            item.add_marker(pytest.mark.tree)
        elif "test_server" in item.fspath.basename:
            item.add_marker(pytest.mark.server)

        if "convergence" in item.name:
            item.add_marker(pytest.mark.slow)
