import numpy as np

from .Layer import Layer


class FullyConnected(Layer):
    def __init__(self, name, out_features):
        super().__init__(name)
        self.out_features = out_features

    def infer_shape(self):
        self.output_channels = self.out_features
        self.output_height = self.output_width = 1

    def create_resources(self, rng):
        # weights: (out_features, in_features), bias: (out_features,)
        scale = np.sqrt(3.0 / (self.input_number * self.output_number))
        self._init_params(rng, (self.output_number, self.input_number),
                          (self.output_number,), scale)

    def forward(self, x):
        B = self.batch_size
        x2 = x.reshape(B, self.input_number)
        y2 = self.output.reshape(B, self.output_number)
        self.backend.gemm(x2, self.weights, y2, trans_b=True)
        # broadcast bias across the batch: y += ones (B,1) @ b (1,out)
        self.backend.gemm(self.ones.reshape(B, 1), self.bias.reshape(1, -1), y2, beta=1.0)

    def backward(self, x, dy):
        B = self.batch_size
        x2 = x.reshape(B, self.input_number)
        dy2 = dy.reshape(B, self.output_number)
        self.backend.gemm(dy2, x2, self.grad_w, trans_a=True)
        self.backend.gemm(dy2, self.ones.reshape(B, 1), self.grad_b.reshape(-1, 1), trans_a=True)
        if not self.is_first:
            self.backend.gemm(dy2, self.weights, self.diff.reshape(B, self.input_number))

    def params(self):
        return [self.weights, self.bias] if self.weights is not None else []

    def grads(self):
        return [self.grad_w, self.grad_b] if self.grad_w is not None else []
