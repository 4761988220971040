"""Probability distributions used by the covariance tree model.

Both are built with TensorFlow Probability as the backend and sampled
with explicit JAX PRNG keys.
"""

from tensorflow_probability.substrates import jax as tfp

from covtree.core import (
    tfp_distribution,
)

tfd = tfp.distributions

categorical = tfp_distribution(
    lambda logits: tfd.Categorical(logits),
    name="Categorical",
)
"""Categorical distribution over discrete outcomes.

Mathematical Formulation:
    PMF: P(X = k) = p_k for k ∈ {0, 1, ..., K-1}

    Where p_k = exp(θ_k) / ∑_j exp(θ_j).

Args:
    logits: Log-probabilities θ for each category.
"""

normal = tfp_distribution(
    tfd.Normal,
    name="Normal",
)
"""Normal (Gaussian) distribution.

Mathematical Formulation:
    PDF: f(x; μ, σ) = (1/√(2πσ²)) × exp(-(x-μ)²/(2σ²))

Args:
    loc: Mean of the distribution μ.
    scale: Standard deviation σ (> 0).
"""
