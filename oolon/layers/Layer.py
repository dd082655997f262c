import os

import numpy as np

from ..errors import CheckpointError, ShapeError


class Layer:
    """
    Base layer. Holds shape metadata, topology links (integer handles into the
    owning network), device buffers and host mirrors of the parameters.

    Subclasses override as needed:
      infer_shape()        output geometry from input geometry
      create_resources()   descriptors, parameter buffers
      forward(x)           write self.output
      backward(x, dy)      write parameter grads and, unless first, self.diff
    """
    is_data_source = False

    def __init__(self, name):
        self.name = name
        self.handle = None
        self.is_first = False

        self.input_number = 0
        self.input_channels = self.input_height = self.input_width = 1
        self.output_number = 0
        self.output_channels = self.output_height = self.output_width = 1
        self.kernel_size = 1
        self.padding = 0
        self.stride = 1

        # topology (handles into Network.layers)
        self.last_layers = []
        self.next_layers = []

        # host mirrors, authoritative only at init / load / save
        self.param_w = None
        self.param_b = None

        # device side
        self.backend = None
        self.batch_size = None
        self.x_desc = None
        self.y_desc = None
        self.output = None
        self.diff = None
        self.input_sum = None
        self.grad_sum = None
        self.weights = None
        self.bias = None
        self.grad_w = None
        self.grad_b = None

        # borrowed from the network
        self.ones = None
        self.workspace = None

    def __repr__(self):
        return (f"{type(self).__name__}({self.name!r}, "
                f"{self.input_channels}x{self.input_height}x{self.input_width} -> "
                f"{self.output_channels}x{self.output_height}x{self.output_width})")

    # ----- shape inference -----
    def link(self, upstream):
        """Infer shapes from the upstream layers. Every upstream must agree."""
        if not upstream:
            raise ShapeError(f"Layer {self.name!r} needs at least one upstream layer")
        first = upstream[0]
        dims = (first.output_channels, first.output_height, first.output_width)
        for up in upstream[1:]:
            other = (up.output_channels, up.output_height, up.output_width)
            if other != dims:
                raise ShapeError(
                    f"Layer {self.name!r}: upstream {up.name!r} produces {other}, "
                    f"expected {dims} like {first.name!r}"
                )

        self.input_channels, self.input_height, self.input_width = dims
        self.input_number = first.output_number
        self.is_first = all(up.is_data_source for up in upstream)
        self.infer_shape()
        self.output_number = self.output_channels * self.output_height * self.output_width
        if min(self.output_channels, self.output_height, self.output_width) < 1:
            raise ShapeError(f"Layer {self.name!r} has an empty output: {self!r}")

    def infer_shape(self):
        self.output_channels = self.input_channels
        self.output_height = self.input_height
        self.output_width = self.input_width

    # ----- resources -----
    def allocate(self, backend, batch_size, rng):
        self.backend = backend
        self.batch_size = batch_size
        self.x_desc = backend.create_tensor_descriptor(
            batch_size, self.input_channels, self.input_height, self.input_width)
        self.y_desc = backend.create_tensor_descriptor(
            batch_size, self.output_channels, self.output_height, self.output_width)
        self.output = backend.allocate(self.name, "output", self.y_desc.shape)
        if not self.is_first:
            self.diff = backend.allocate(self.name, "diff", self.x_desc.shape)
        if len(self.last_layers) > 1:
            self.input_sum = backend.allocate(self.name, "input_sum", self.x_desc.shape)
        self.create_resources(rng)

    def create_resources(self, rng):
        pass

    def bind(self, ones, workspace):
        """Borrow the network's shared buffers once the topology is final."""
        self.ones = ones
        self.workspace = workspace
        if len(self.next_layers) > 1 and self.grad_sum is None:
            self.grad_sum = self.backend.allocate(self.name, "grad_sum", self.y_desc.shape)

    def descriptors(self):
        return [self.x_desc, self.y_desc]

    @property
    def workspace_size(self):
        return 0

    def release(self):
        if self.backend is None:
            return
        for desc in self.descriptors():
            self.backend.destroy_descriptor(desc)
        self.backend.release(self.name)
        self.output = self.diff = self.input_sum = self.grad_sum = None
        self.weights = self.bias = self.grad_w = self.grad_b = None
        self.ones = self.workspace = None
        self.backend = None

    # ----- propagation -----
    def combine_inputs(self, inputs):
        """Fan-in: the layer consumes the elementwise sum of its inputs."""
        if len(inputs) == 1:
            return inputs[0]
        self.input_sum[...] = inputs[0]
        for x in inputs[1:]:
            self.backend.axpy(1.0, x, self.input_sum)
        return self.input_sum

    def accumulate_gradients(self, grads):
        """Fan-out: sum the input-gradients of every consumer."""
        if not grads:
            return None
        if len(grads) == 1:
            return grads[0]
        self.grad_sum[...] = grads[0]
        for g in grads[1:]:
            self.backend.axpy(1.0, g, self.grad_sum)
        return self.grad_sum

    def forward_propagate(self, inputs):
        self.forward(self.combine_inputs(inputs))

    def back_propagate(self, inputs, output_grads):
        # input_sum still holds the forward sum
        x = inputs[0] if len(inputs) == 1 else self.input_sum
        self.backward(x, self.accumulate_gradients(output_grads))

    def forward(self, x):
        raise NotImplementedError

    def backward(self, x, dy):
        raise NotImplementedError

    # expose params / grads for the update step
    def params(self):
        return []

    def grads(self):
        return []

    def update_weights(self, learning_rate):
        for p, g in zip(self.params(), self.grads()):
            self.backend.axpy(-learning_rate, g, p)

    # ----- persistence -----
    def checkpoint_files(self, folder):
        if not self.params():
            return []
        return [os.path.join(folder, f"{self.name}.oolon"),
                os.path.join(folder, f"{self.name}.bias.oolon")]

    def sync_to_host(self):
        if self.params():
            self.param_w[...] = self.backend.to_cpu(self.weights)
            self.param_b[...] = self.backend.to_cpu(self.bias)

    def to_file(self, folder):
        if not self.params():
            return
        self.sync_to_host()
        for path, host in zip(self.checkpoint_files(folder), (self.param_w, self.param_b)):
            try:
                host.astype("<f4").tofile(path)
            except OSError as e:
                raise CheckpointError(f"Could not write {path}: {e}") from e

    def read_params(self, folder):
        """
        Read and size-check this layer's parameter files into new host arrays.
        None when a file is missing; the layer itself is not touched.
        """
        paths = self.checkpoint_files(folder)
        if not all(os.path.isfile(p) for p in paths):
            return None
        arrays = []
        for path, host in zip(paths, (self.param_w, self.param_b)):
            try:
                data = np.fromfile(path, dtype="<f4")
            except OSError as e:
                raise CheckpointError(f"Could not read {path}: {e}") from e
            if data.size != host.size:
                raise CheckpointError(
                    f"{path} holds {data.size} floats, layer {self.name!r} expects {host.size}")
            arrays.append(data.reshape(host.shape))
        return arrays

    def restore_params(self, arrays):
        """Install arrays returned by read_params() and upload them."""
        if not arrays:
            return
        self.param_w[...], self.param_b[...] = arrays
        self.backend.copy_to_device(self.weights, self.param_w)
        self.backend.copy_to_device(self.bias, self.param_b)

    def from_file(self, folder):
        """Load parameters; False when a file is missing."""
        arrays = self.read_params(folder)
        if arrays is None:
            return False
        self.restore_params(arrays)
        return True

    def _init_params(self, rng, w_shape, b_shape, scale):
        """Uniform init over [-scale, scale] on the host, then upload."""
        self.param_w = rng.uniform(-scale, scale, size=w_shape).astype(np.float32)
        self.param_b = rng.uniform(-scale, scale, size=b_shape).astype(np.float32)
        self.weights = self.backend.allocate(self.name, "weights", w_shape)
        self.bias = self.backend.allocate(self.name, "bias", b_shape)
        self.grad_w = self.backend.allocate(self.name, "grad_w", w_shape)
        self.grad_b = self.backend.allocate(self.name, "grad_b", b_shape)
        self.backend.copy_to_device(self.weights, self.param_w)
        self.backend.copy_to_device(self.bias, self.param_b)
