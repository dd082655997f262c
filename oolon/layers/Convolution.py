import numpy as np

from .Layer import Layer
from ..errors import ShapeError


class Convolution(Layer):
    """
    2D cross-correlation against an (out_channels, in_channels, k, k) filter
    bank plus a per-output-channel bias.

    Algorithms and their workspace needs are chosen once at construction; the
    scratch memory itself is the network's shared workspace.
    """
    def __init__(self, name, out_channels, kernel_size, padding=0, stride=1):
        super().__init__(name)
        self.out_channels = out_channels
        self.kernel_size = kernel_size
        self.padding = padding
        self.stride = stride

        self.w_desc = None
        self.b_desc = None
        self.conv_desc = None
        self.fwd_algo = None
        self.bwd_filter_algo = None
        self.bwd_data_algo = None

    def infer_shape(self):
        if self.kernel_size < 1 or self.stride < 1 or self.padding < 0:
            raise ShapeError(f"Layer {self.name!r}: invalid kernel/stride/padding "
                             f"({self.kernel_size}, {self.stride}, {self.padding})")
        self.output_channels = self.out_channels
        self.output_height = (self.input_height + 2 * self.padding - self.kernel_size) // self.stride + 1
        self.output_width = (self.input_width + 2 * self.padding - self.kernel_size) // self.stride + 1

    def create_resources(self, rng):
        be = self.backend
        k = self.kernel_size
        self.w_desc = be.create_filter_descriptor(self.output_channels, self.input_channels, k, k)
        self.b_desc = be.create_tensor_descriptor(1, self.output_channels, 1, 1)
        self.conv_desc = be.create_convolution_descriptor(self.padding, self.stride)

        self.fwd_algo = be.get_convolution_forward_algorithm(
            self.x_desc, self.w_desc, self.conv_desc, self.y_desc)
        self.bwd_filter_algo = be.get_convolution_backward_filter_algorithm(
            self.x_desc, self.y_desc, self.conv_desc, self.w_desc)
        self.bwd_data_algo = be.get_convolution_backward_data_algorithm(
            self.w_desc, self.y_desc, self.conv_desc, self.x_desc)

        scale = np.sqrt(3.0 / (k * k * self.input_channels))
        self._init_params(rng, self.w_desc.shape, (self.output_channels,), scale)

    @property
    def workspace_size(self):
        algos = (self.fwd_algo, self.bwd_filter_algo, self.bwd_data_algo)
        return max((a.workspace_size for a in algos if a is not None), default=0)

    def descriptors(self):
        return super().descriptors() + [self.w_desc, self.b_desc, self.conv_desc]

    def forward(self, x):
        self.backend.convolution_forward(x, self.weights, self.conv_desc, self.fwd_algo,
                                         self.workspace, self.output)
        self.backend.add_bias(self.bias, self.output)

    def backward(self, x, dy):
        be = self.backend
        be.convolution_backward_bias(dy, self.grad_b)
        be.convolution_backward_filter(x, dy, self.conv_desc, self.bwd_filter_algo,
                                       self.workspace, self.grad_w)
        if not self.is_first:
            be.convolution_backward_data(self.weights, dy, self.conv_desc, self.bwd_data_algo,
                                         self.workspace, self.diff)

    def params(self):
        return [self.weights, self.bias] if self.weights is not None else []

    def grads(self):
        return [self.grad_w, self.grad_b] if self.grad_w is not None else []
