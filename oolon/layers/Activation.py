from .Layer import Layer


class Activation(Layer):
    """Elementwise, parameterless, shape-preserving nonlinearity."""
    def __init__(self, name, mode="relu"):
        super().__init__(name)
        self.mode = mode
        self.act_desc = None

    def create_resources(self, rng):
        self.act_desc = self.backend.create_activation_descriptor(self.mode)

    def descriptors(self):
        return super().descriptors() + [self.act_desc]

    def forward(self, x):
        self.backend.activation_forward(self.act_desc, x, self.output)

    def backward(self, x, dy):
        if not self.is_first:
            self.backend.activation_backward(self.act_desc, self.output, dy, x, self.diff)
