"""Shared fixtures for the pepsad test suite."""

import jax
import pytest

from pepsad.core.index import Index
from pepsad.core.tensor import DenseTensor
from pepsad.network.network import TensorArena

# ------------------------------------------------------------------ #
# Random key fixture                                                   #
# ------------------------------------------------------------------ #

@pytest.fixture
def rng():
    return jax.random.PRNGKey(42)


@pytest.fixture
def rng2():
    return jax.random.PRNGKey(99)


@pytest.fixture
def make_tensor(rng):
    """Factory for random normal DenseTensors with fresh keys."""
    keys = iter(jax.random.split(rng, 64))

    def make(*indices):
        return DenseTensor.random_normal(indices, next(keys))

    return make


# ------------------------------------------------------------------ #
# Index fixtures                                                       #
# ------------------------------------------------------------------ #

@pytest.fixture
def ijk():
    """Three indices of dims 2, 3, 4."""
    return Index(2, "i"), Index(3, "j"), Index(4, "k")


@pytest.fixture
def arena():
    return TensorArena()
