from .Layer import Layer
from ..errors import ShapeError


class MaxPool(Layer):
    def __init__(self, name, kernel_size=2, stride=None):
        super().__init__(name)
        self.kernel_size = kernel_size
        self.stride = stride if stride is not None else kernel_size
        self.pool_desc = None

    def infer_shape(self):
        if not 1 <= self.kernel_size <= self.stride:
            raise ShapeError(f"Layer {self.name!r}: pooling window {self.kernel_size} "
                             f"must be between 1 and the stride {self.stride}")
        self.output_channels = self.input_channels
        # incomplete trailing windows are dropped
        self.output_height = self.input_height // self.stride
        self.output_width = self.input_width // self.stride

    def create_resources(self, rng):
        self.pool_desc = self.backend.create_pooling_descriptor(self.kernel_size, self.stride)

    def descriptors(self):
        return super().descriptors() + [self.pool_desc]

    def forward(self, x):
        self.backend.pooling_forward(self.pool_desc, x, self.output)

    def backward(self, x, dy):
        if not self.is_first:
            self.backend.pooling_backward(self.pool_desc, self.output, dy, x, self.diff)
