import numpy as np

from .Layer import Layer
from ..errors import DatasetError


class DataSource(Layer):
    """
    Input slot of the network: device buffers for the current batch's images
    and float-encoded labels. Not propagated through.
    """
    is_data_source = True

    def __init__(self, name="data", channels=1, height=28, width=28):
        super().__init__(name)
        self.output_channels = channels
        self.output_height = height
        self.output_width = width
        self.output_number = channels * height * width
        self.is_first = True
        self.labels = None

    def link(self, upstream):
        if upstream:
            raise ValueError(f"Data source {self.name!r} cannot have upstream layers")

    def allocate(self, backend, batch_size, rng):
        self.backend = backend
        self.batch_size = batch_size
        self.y_desc = backend.create_tensor_descriptor(
            batch_size, self.output_channels, self.output_height, self.output_width)
        self.output = backend.allocate(self.name, "output", self.y_desc.shape)
        self.labels = backend.allocate(self.name, "labels", (batch_size,))

    def descriptors(self):
        return [self.y_desc]

    def release(self):
        super().release()
        self.labels = None

    def _normalize(self, images, count):
        images = np.asarray(images)
        try:
            images = images.reshape(count, self.output_channels, self.output_height, self.output_width)
        except ValueError as e:
            raise DatasetError(f"Images of shape {images.shape} do not fit "
                               f"{self.output_channels}x{self.output_height}x{self.output_width}") from e
        # integer input is raw byte values, whatever its dtype
        if np.issubdtype(images.dtype, np.integer):
            return images.astype(np.float32) / 255.0
        return images.astype(np.float32)

    def load_batch(self, images, labels):
        """Copy one batch of raw images (bytes scaled to [0,1]) and labels to the device."""
        self.backend.copy_to_device(self.output, self._normalize(images, self.batch_size))
        self.backend.copy_to_device(self.labels, np.asarray(labels, dtype=np.float32))

    def load_example(self, image, label=0):
        """Place a single example in slot 0 of the batch."""
        host = np.zeros(self.y_desc.shape, dtype=np.float32)
        host[0] = self._normalize(image, 1)[0]
        labels = np.zeros(self.batch_size, dtype=np.float32)
        labels[0] = label
        self.backend.copy_to_device(self.output, host)
        self.backend.copy_to_device(self.labels, labels)

    def forward(self, x):
        pass

    def backward(self, x, dy):
        pass
