from .Layer import Layer
from .DataSource import DataSource
from .FullyConnected import FullyConnected
from .Convolution import Convolution
from .Activation import Activation
from .MaxPool import MaxPool
from .Output import Output

__all__ = [
    "Layer",
    "DataSource",
    "FullyConnected",
    "Convolution",
    "Activation",
    "MaxPool",
    "Output",
]
