import os

os.environ.setdefault("MPLBACKEND", "Agg")

import numpy as np
import pytest

from oolon.helpers.Backend import Backend
from oolon.layers import Layer


@pytest.fixture
def backend():
    return Backend(use_gpu=False)


@pytest.fixture
def backend64():
    return Backend(use_gpu=False, default_float=np.float64)


def _attach(be, layer, channels, height, width, batch_size=2, seed=0):
    """Link `layer` behind a plain (non data source) upstream and give it shared buffers."""
    up = Layer("upstream")
    up.output_channels, up.output_height, up.output_width = channels, height, width
    up.output_number = channels * height * width
    layer.link([up])
    layer.last_layers = [0]
    layer.allocate(be, batch_size, np.random.default_rng(seed))
    itemsize = np.dtype(be.default_float).itemsize
    ones = be.allocate("shared", "ones", (batch_size,))
    ones.fill(1.0)
    workspace = be.allocate("shared", "workspace", (-(-layer.workspace_size // itemsize),))
    layer.bind(ones, workspace)
    return layer


@pytest.fixture
def attach(backend):
    def attach_(layer, channels, height, width, batch_size=2, seed=0):
        return _attach(backend, layer, channels, height, width, batch_size, seed)
    return attach_


@pytest.fixture
def attach64(backend64):
    def attach_(layer, channels, height, width, batch_size=2, seed=0):
        return _attach(backend64, layer, channels, height, width, batch_size, seed)
    return attach_


@pytest.fixture
def toy_set():
    """Two linearly separable classes of 1x2x2 byte images."""
    rng = np.random.default_rng(0)
    labels = rng.integers(0, 2, size=64).astype(np.uint8)
    images = np.zeros((64, 2, 2), dtype=np.uint8)
    images[labels == 0, 0, 0] = 200
    images[labels == 1, 1, 1] = 200
    images += rng.integers(0, 30, size=images.shape).astype(np.uint8)
    return images, labels
