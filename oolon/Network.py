import enum
import os
import time

import numpy as np

from .errors import CheckpointError, DatasetError, ShapeError
from .helpers.Backend import Backend
from .helpers.logger import RunLogger
from .helpers.lr_scheduler import get_scheduler
from .layers import Output

LEARNRATE_FILE = "learnrate.oolon"
# (float learning rate, int iteration count), little-endian
LEARNRATE_DTYPE = np.dtype([("learning_rate", "<f4"), ("iteration", "<i4")])


class NetworkState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    ASSEMBLED = "assembled"
    TRAINING = "training"
    INFERENCE = "inference"
    DESTROYED = "destroyed"


class Network:
    """
    Owns an ordered list of layers (handles are list indices), the numerical
    backend, a ones vector of batch length for bias broadcasting and a scratch
    workspace sized to the largest convolution requirement.
    """
    def __init__(
        self,
        batch_size=64,
        use_gpu=True,
        device_id=0,
        base_lr=0.01,
        lr_policy="inv",
        gamma=1e-4,
        power=0.75,
        step_size=1000,
        seed=None,
        log_interval=100,
        runs_root=None,
        tag="run",
        verbose=1,
        backend=None,
    ):
        self.batch_size = batch_size
        self.backend = backend if backend is not None else Backend(use_gpu=use_gpu, device_id=device_id)
        self.rng = np.random.default_rng(seed)
        if seed is not None:
            self.backend.seed(seed)

        if lr_policy == "inv":
            sched_kwargs = {"gamma": gamma, "power": power}
        elif lr_policy == "step":
            sched_kwargs = {"step_size": step_size, "gamma": gamma}
        elif lr_policy == "exp":
            sched_kwargs = {"gamma": gamma}
        else:
            sched_kwargs = {}
        self.scheduler = get_scheduler(lr_policy, base_lr, **sched_kwargs)

        self.iteration = 0
        self.learning_rate = base_lr

        self.layers = []
        self.data = None
        self.ones = None
        self.workspace = None
        self.workspace_bytes = 0
        self.state = NetworkState.UNINITIALIZED

        self.log_interval = log_interval
        self.runs_root = runs_root
        self.tag = tag
        self.verbose = verbose
        self.logger = None
        self.last_confusion = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.destroy()
        return False

    def __len__(self):
        return len(self.layers)

    def __getitem__(self, handle):
        return self.layers[handle]

    # ================== assembly ==================
    def add(self, layer, inputs=None):
        """
        Link `layer` to the layers behind `inputs` (handles; default: the last
        added layer), allocate its buffers and return its handle.
        """
        if self.state is not NetworkState.UNINITIALIZED:
            raise RuntimeError(f"Cannot add layers to a network in state {self.state.value}")
        if any(L.name == layer.name for L in self.layers):
            raise ShapeError(f"Duplicate layer name {layer.name!r}")

        if layer.is_data_source:
            if self.data is not None:
                raise ShapeError("Network already has a data source")
            inputs = []
        else:
            if inputs is None:
                if not self.layers:
                    raise ShapeError(f"Layer {layer.name!r} has nothing to link to")
                inputs = [len(self.layers) - 1]
            for h in inputs:
                if not 0 <= h < len(self.layers):
                    raise ShapeError(f"Layer {layer.name!r}: unknown upstream handle {h}")

        layer.link([self.layers[h] for h in inputs])
        layer.last_layers = list(inputs)
        try:
            layer.allocate(self.backend, self.batch_size, self.rng)
        except Exception:
            layer.release()
            raise

        # upstream layers only learn about the consumer once it is fully built
        handle = len(self.layers)
        layer.handle = handle
        for h in inputs:
            self.layers[h].next_layers.append(handle)
        self.layers.append(layer)
        if layer.is_data_source:
            self.data = layer
        return handle

    def assemble(self):
        """Allocate the shared ones vector and workspace once all layers are linked."""
        if self.state is not NetworkState.UNINITIALIZED:
            raise RuntimeError(f"Network is already {self.state.value}")
        if self.data is None:
            raise ShapeError("Network has no data source")
        for layer in self.layers:
            if not layer.next_layers and not layer.is_data_source and not isinstance(layer, Output):
                raise ShapeError(f"Layer {layer.name!r} has no consumer and is not an output layer")

        self.ones = self.backend.allocate("network", "ones", (self.batch_size,))
        self.backend.fill(self.ones, 1.0)

        self.workspace_bytes = max((L.workspace_size for L in self.layers), default=0)
        itemsize = np.dtype(self.backend.default_float).itemsize
        self.workspace = self.backend.allocate("network", "workspace", (-(-self.workspace_bytes // itemsize),))

        for layer in self.layers:
            layer.bind(self.ones, self.workspace)
            if isinstance(layer, Output):
                layer.labels = self.data.labels

        self.state = NetworkState.ASSEMBLED
        if self.verbose > 0:
            print(f"Assembled {len(self.layers)} layers, workspace {self.workspace_bytes} bytes")
        return self

    @property
    def output_layer(self):
        return self.layers[-1]

    def _require_assembled(self):
        if self.state in (NetworkState.UNINITIALIZED, NetworkState.DESTROYED):
            raise RuntimeError(f"Network is {self.state.value}, assemble() it first")

    # ================== propagation ==================
    def forward_propagate(self):
        self._require_assembled()
        for layer in self.layers:
            if layer.is_data_source:
                continue
            layer.forward_propagate([self.layers[h].output for h in layer.last_layers])

    def back_propagate(self):
        self._require_assembled()
        # reverse construction order: every consumer has written its diff
        for layer in reversed(self.layers):
            if layer.is_data_source:
                continue
            layer.back_propagate(
                [self.layers[h].output for h in layer.last_layers],
                [self.layers[h].diff for h in layer.next_layers],
            )

    def update_weights(self, learning_rate):
        self._require_assembled()
        for layer in self.layers:
            layer.update_weights(learning_rate)

    # ================== training / inference ==================
    def _check_labels(self, images, labels):
        if len(labels) != len(images):
            raise DatasetError(f"{len(images)} images but {len(labels)} labels")
        classes = self.output_layer.output_number
        if len(labels) and (int(np.max(labels)) >= classes or int(np.min(labels)) < 0):
            raise DatasetError(f"Labels must be in [0, {classes})")

    def train(self, iterations, images, labels):
        """
        Run `iterations` SGD steps over cyclic batches of (images, labels).
        Returns the learning rate used by the last step.
        """
        self._require_assembled()
        num_batches = len(images) // self.batch_size
        if num_batches == 0:
            raise DatasetError(f"{len(images)} training examples cannot fill a batch of {self.batch_size}")
        self._check_labels(images, labels)
        if self.runs_root is not None and self.logger is None:
            self.logger = RunLogger(root=self.runs_root, tag=self.tag)

        self.state = NetworkState.TRAINING
        self.backend.synchronize()
        t0 = time.time()
        with self.backend.stream():
            for _ in range(iterations):
                start = (self.iteration % num_batches) * self.batch_size
                end = start + self.batch_size
                self.data.load_batch(images[start:end], labels[start:end])

                self.forward_propagate()
                self.back_propagate()

                self.iteration += 1
                self.learning_rate = self.scheduler.step(self.iteration)
                self.update_weights(self.learning_rate)

                if self.log_interval and self.iteration % self.log_interval == 0:
                    self._log_progress(time.time() - t0)
        self.backend.synchronize()
        elapsed = time.time() - t0

        if self.verbose > 0:
            print(f"Trained {iterations} iterations in {elapsed:.2f}s "
                  f"(iteration {self.iteration}, lr {self.learning_rate:.6f})")
        if self.logger is not None:
            self.logger.save_json()
            self.logger.plot_all(tag=self.tag)
        return self.learning_rate

    def _log_progress(self, elapsed):
        loss = self.output_layer.loss()
        if self.verbose > 0:
            print(f"Iteration {self.iteration} - loss: {loss:.4f} - lr: {self.learning_rate:.6f} "
                  f"- {elapsed:.1f}s")
        if self.logger is not None:
            self.logger.log_iteration(self.iteration, loss=loss, lr=self.learning_rate, time_s=elapsed)

    def predict(self, image):
        """Classify one example: argmax over the final layer's channels."""
        self._require_assembled()
        self.data.load_example(image)
        self.forward_propagate()
        out = self.backend.to_cpu(self.output_layer.output[0])
        return int(np.argmax(out.reshape(-1)))

    def test(self, images, labels, num_samples=None, seed=None):
        """Error rate of forward-only classification over a sample of the test set."""
        self._require_assembled()
        self._check_labels(images, labels)
        n = len(images)
        if num_samples is None or num_samples >= n:
            indices = np.arange(n)
        else:
            indices = np.random.default_rng(seed).choice(n, size=num_samples, replace=False)
        if len(indices) == 0:
            raise DatasetError("Test set is empty")

        self.state = NetworkState.INFERENCE
        classes = self.output_layer.output_number
        confusion = np.zeros((classes, classes), dtype=np.int64)
        errors = 0
        with self.backend.stream():
            for i in indices:
                pred = self.predict(images[i])
                truth = int(labels[i])
                confusion[truth, pred] += 1
                errors += pred != truth

        error_rate = errors / len(indices)
        self.last_confusion = confusion
        if self.verbose > 0:
            print(f"Classification error rate: {error_rate * 100:.2f}% "
                  f"({errors}/{len(indices)})")
        if self.logger is not None:
            self.logger.save_test_summary(error_rate, confusion, tag=self.tag)
        return error_rate

    # ================== checkpoints ==================
    def save(self, name, root="checkpoints"):
        """Write every layer's parameters plus the learning-rate state."""
        self._require_assembled()
        folder = os.path.join(root, name)
        try:
            os.makedirs(folder, exist_ok=True)
        except OSError as e:
            raise CheckpointError(f"Could not create checkpoint {folder}: {e}") from e
        for layer in self.layers:
            layer.to_file(folder)

        state = np.array([(self.learning_rate, self.iteration)], dtype=LEARNRATE_DTYPE)
        path = os.path.join(folder, LEARNRATE_FILE)
        try:
            state.tofile(path)
        except OSError as e:
            raise CheckpointError(f"Could not write {path}: {e}") from e
        if self.verbose > 0:
            print(f"Saved checkpoint {folder}")
        return folder

    def load(self, name, root="checkpoints"):
        """Restore a checkpoint. Returns False if any of its files is missing."""
        self._require_assembled()
        folder = os.path.join(root, name)
        files = [os.path.join(folder, LEARNRATE_FILE)]
        for layer in self.layers:
            files.extend(layer.checkpoint_files(folder))
        missing = [p for p in files if not os.path.isfile(p)]
        if missing:
            if self.verbose > 0:
                print(f"Checkpoint {folder} not loaded, missing {missing[0]}")
            return False

        # read and check every file before any parameter is overwritten
        path = files[0]
        if os.path.getsize(path) != LEARNRATE_DTYPE.itemsize:
            raise CheckpointError(f"{path} is not a {LEARNRATE_DTYPE.itemsize}-byte learning-rate record")
        try:
            state = np.fromfile(path, dtype=LEARNRATE_DTYPE)
        except OSError as e:
            raise CheckpointError(f"Could not read {path}: {e}") from e
        staged = [(layer, layer.read_params(folder)) for layer in self.layers]

        for layer, arrays in staged:
            layer.restore_params(arrays)
        self.learning_rate = float(state["learning_rate"][0])
        self.iteration = int(state["iteration"][0])
        if self.verbose > 0:
            print(f"Loaded checkpoint {folder} (iteration {self.iteration}, lr {self.learning_rate:.6f})")
        return True

    # ================== teardown ==================
    def destroy(self):
        """Release every layer's buffers and descriptors and the shared buffers."""
        if self.state is NetworkState.DESTROYED:
            return
        for layer in self.layers:
            layer.release()
        self.backend.release("network")
        self.backend.clear_cache()
        self.layers = []
        self.data = None
        self.ones = self.workspace = None
        self.state = NetworkState.DESTROYED
