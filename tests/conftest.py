"""
Shared fixtures for atsne tests.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure the repository root is importable
root = Path(__file__).parent.parent
if str(root) not in sys.path:
    sys.path.insert(0, str(root))

from atsne_model import Point  # noqa: E402


def make_points(vectors, metadata=None):
    metadata = metadata or [{} for _ in vectors]
    return [
        Point(index=i, vector=np.asarray(v, dtype=np.float32), metadata=dict(m))
        for i, (v, m) in enumerate(zip(vectors, metadata))
    ]


@pytest.fixture
def unit_points():
    """30 random unit vectors in 8 dimensions."""
    rng = np.random.default_rng(7)
    x = rng.normal(size=(30, 8)).astype(np.float32)
    x /= np.linalg.norm(x, axis=1, keepdims=True)
    return make_points(x)


@pytest.fixture
def two_clusters():
    """Two well separated blobs of 20 points each."""
    rng = np.random.default_rng(3)
    a = rng.normal(loc=0.0, scale=0.1, size=(20, 6))
    b = rng.normal(loc=3.0, scale=0.1, size=(20, 6))
    labels = ["a"] * 20 + ["b"] * 20
    return make_points(np.vstack([a, b]), [{"label": l} for l in labels])
