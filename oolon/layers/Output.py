import numpy as np

from .Layer import Layer


class Output(Layer):
    """
    Softmax classification head with cross-entropy loss.

    labels: the data source's device buffer of float-encoded class indices,
    bound by the network when it is assembled.
    """
    def __init__(self, name):
        super().__init__(name)
        self.labels = None
        self.loss_grad = None

    def infer_shape(self):
        self.output_channels = self.input_number
        self.output_height = self.output_width = 1

    def create_resources(self, rng):
        # p - onehot, before the softmax-backward primitive
        self.loss_grad = self.backend.allocate(self.name, "loss_grad", self.y_desc.shape)

    def release(self):
        super().release()
        self.loss_grad = None

    def forward(self, x):
        self.backend.softmax_forward(x.reshape(self.y_desc.shape), self.output)

    def backward(self, x, dy):
        be = self.backend
        be.softmax_loss_gradient(self.output, self.labels, self.loss_grad)
        if not self.is_first:
            be.softmax_backward(self.output, self.loss_grad, self.diff.reshape(self.y_desc.shape),
                                alpha=1.0 / self.batch_size)

    def loss(self):
        """Mean cross-entropy of the current batch."""
        xp = self.backend.xp
        probs = self.output.reshape(self.batch_size, -1)
        picked = probs[xp.arange(self.batch_size), self.labels.astype(xp.int32)]
        return float(self.backend.to_cpu(-xp.log(picked + 1e-12).mean()))

    def predictions(self):
        return np.argmax(self.backend.to_cpu(self.output).reshape(self.batch_size, -1), axis=1)
