"""
IDX (MNIST) dataset reader.

Images file: big-endian header (magic 2051, count, rows, cols) followed by
count*rows*cols pixel bytes. Labels file: (magic 2049, count) followed by one
byte per label.
"""
import os

import numpy as np

from ..errors import DatasetError

IMAGE_MAGIC = 2051
LABEL_MAGIC = 2049

SPLITS = {
    "train": ("train-images-idx3-ubyte", "train-labels-idx1-ubyte"),
    "test": ("t10k-images-idx3-ubyte", "t10k-labels-idx1-ubyte"),
}


def _read(path):
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise DatasetError(f"Could not read dataset file {path}: {e}") from e


def _header(raw, path, words, magic):
    if len(raw) < 4 * words:
        raise DatasetError(f"{path} is truncated: no room for a {4 * words}-byte header")
    header = np.frombuffer(raw, dtype=">u4", count=words)
    if header[0] != magic:
        raise DatasetError(f"{path}: bad magic number {header[0]}, expected {magic}")
    return [int(v) for v in header[1:]]


def read_idx_images(path):
    """Returns uint8 images of shape (count, height, width)."""
    raw = _read(path)
    count, height, width = _header(raw, path, 4, IMAGE_MAGIC)
    expected = count * height * width
    pixels = np.frombuffer(raw, dtype=np.uint8, offset=16)
    if pixels.size < expected:
        raise DatasetError(f"{path} is truncated: {pixels.size} of {expected} pixel bytes")
    return pixels[:expected].reshape(count, height, width)


def read_idx_labels(path):
    """Returns uint8 labels of shape (count,)."""
    raw = _read(path)
    (count,) = _header(raw, path, 2, LABEL_MAGIC)
    labels = np.frombuffer(raw, dtype=np.uint8, offset=8)
    if labels.size < count:
        raise DatasetError(f"{path} is truncated: {labels.size} of {count} labels")
    return labels[:count]


def load_mnist(directory, split="train"):
    """Load one split as (images (N, H, W) uint8, labels (N,) uint8)."""
    if split not in SPLITS:
        raise ValueError(f"Unknown split: {split}. Available: {list(SPLITS.keys())}")
    image_file, label_file = SPLITS[split]
    images = read_idx_images(os.path.join(directory, image_file))
    labels = read_idx_labels(os.path.join(directory, label_file))
    if len(images) != len(labels):
        raise DatasetError(
            f"{split}: {len(images)} images but {len(labels)} labels in {directory}")
    return images, labels


def write_idx(path, images=None, labels=None):
    """Write images or labels in IDX layout (used to build fixtures and exports)."""
    with open(path, "wb") as f:
        if images is not None:
            images = np.asarray(images, dtype=np.uint8)
            n, h, w = images.shape
            f.write(np.array([IMAGE_MAGIC, n, h, w], dtype=">u4").tobytes())
            f.write(images.tobytes())
        else:
            labels = np.asarray(labels, dtype=np.uint8)
            f.write(np.array([LABEL_MAGIC, labels.size], dtype=">u4").tobytes())
            f.write(labels.tobytes())
