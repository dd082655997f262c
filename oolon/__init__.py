"""
oolon: a minimal convolutional network training engine running on a CUDA
device through CuPy.

Usage:
    from oolon import Network
    from oolon.layers import DataSource, Convolution, MaxPool, FullyConnected, Activation, Output

    net = Network(batch_size=64)
    net.add(DataSource("data", 1, 28, 28))
    net.add(Convolution("conv1", 20, kernel_size=5))
    ...
    net.add(Output("softmax"))
    net.assemble()
    net.train(1000, images, labels)
    net.save("lenet")
"""
from .errors import (
    OolonError,
    DeviceError,
    NoDeviceError,
    InvalidDeviceError,
    DatasetError,
    CheckpointError,
    ShapeError,
)
from .helpers.Backend import Backend
from .Network import Network, NetworkState
from .LeNet import lenet

__all__ = [
    "Backend",
    "Network",
    "NetworkState",
    "lenet",
    "OolonError",
    "DeviceError",
    "NoDeviceError",
    "InvalidDeviceError",
    "DatasetError",
    "CheckpointError",
    "ShapeError",
]
