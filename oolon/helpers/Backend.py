# oolon/helpers/Backend.py
import contextlib
import functools
from dataclasses import dataclass, field

import numpy as np

from ..errors import DeviceError, NoDeviceError, InvalidDeviceError

try:
    import cupy as cp
except ImportError:
    cp = None

if cp is not None:
    _DEVICE_ERRORS = (
        cp.cuda.runtime.CUDARuntimeError,
        cp.cuda.driver.CUDADriverError,
        cp.cuda.memory.OutOfMemoryError,
        MemoryError,
    )
else:
    _DEVICE_ERRORS = (MemoryError,)

ACTIVATION_MODES = ("sigmoid", "relu", "tanh")


def device_call(fn):
    """Re-raise any failure reported by the device as DeviceError."""
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except _DEVICE_ERRORS as e:
            raise DeviceError(f"{fn.__name__} failed: {e}") from e
    return wrapper


# -------- descriptors --------
@dataclass
class TensorDescriptor:
    n: int
    c: int
    h: int
    w: int
    destroyed: bool = field(default=False, repr=False)

    @property
    def shape(self):
        return (self.n, self.c, self.h, self.w)

    @property
    def size(self):
        return self.n * self.c * self.h * self.w


@dataclass
class FilterDescriptor:
    k: int
    c: int
    h: int
    w: int
    destroyed: bool = field(default=False, repr=False)

    @property
    def shape(self):
        return (self.k, self.c, self.h, self.w)


@dataclass
class ConvolutionDescriptor:
    padding: int
    stride: int
    destroyed: bool = field(default=False, repr=False)

    def output_dim(self, x_desc, w_desc):
        """(n, k, h_out, w_out) of a convolution of x_desc against w_desc."""
        h_out = (x_desc.h + 2 * self.padding - w_desc.h) // self.stride + 1
        w_out = (x_desc.w + 2 * self.padding - w_desc.w) // self.stride + 1
        return x_desc.n, w_desc.k, h_out, w_out


@dataclass
class PoolingDescriptor:
    window: int
    stride: int
    destroyed: bool = field(default=False, repr=False)

    def output_dim(self, x_desc):
        # trailing incomplete windows are dropped
        return x_desc.n, x_desc.c, x_desc.h // self.stride, x_desc.w // self.stride


@dataclass
class ActivationDescriptor:
    mode: str
    destroyed: bool = field(default=False, repr=False)


@dataclass
class ConvolutionAlgorithm:
    name: str
    workspace_size: int  # bytes
    cols_shape: tuple
    indices: tuple = field(repr=False)


class Backend:
    """
    Numerical backend: dense linear algebra, convolution, pooling, activation
    and softmax primitives over device-resident float buffers.

    With use_gpu=True every buffer lives on the selected CUDA device (CuPy).
    With use_gpu=False the same contract runs on host NumPy arrays; this is a
    reference backend, never an automatic fallback.
    """
    def __init__(self, use_gpu=True, device_id=0, default_float=np.float32):
        self.use_gpu = bool(use_gpu)
        self.device_id = device_id
        self.default_float = default_float
        self._arena = {}
        self._im2col_cache = {}
        self.live_descriptors = 0

        if self.use_gpu:
            if cp is None:
                raise NoDeviceError("CuPy is not installed, no GPU backend available")
            try:
                count = cp.cuda.runtime.getDeviceCount()
            except cp.cuda.runtime.CUDARuntimeError as e:
                raise NoDeviceError(f"No CUDA device found: {e}") from e
            if count == 0:
                raise NoDeviceError("No CUDA device found")
            if not 0 <= device_id < count:
                raise InvalidDeviceError(
                    f"Invalid GPU id {device_id}: {count} device(s) available"
                )
            self.xp = cp
            self.device = cp.cuda.Device(device_id)
            self.device.use()
            # blocking stream: ordered with the legacy default stream as well
            self._stream = cp.cuda.Stream()
            print(f"Using GPU backend (CuPy), device {device_id} of {count}")
        else:
            self.xp = np
            self.device = None
            self._stream = None

    # -------- device arena --------
    @device_call
    def allocate(self, owner, name, shape, dtype=None):
        """Allocate a zeroed device buffer owned by `owner`."""
        with self.stream():
            buf = self.xp.zeros(shape, dtype=dtype or self.default_float)
        self._arena.setdefault(owner, {})[name] = buf
        return buf

    def release(self, owner):
        """Drop every buffer owned by `owner`."""
        self._arena.pop(owner, None)

    def owners(self):
        return list(self._arena)

    def allocated_bytes(self, owner=None):
        if owner is not None:
            return sum(b.nbytes for b in self._arena.get(owner, {}).values())
        return sum(b.nbytes for bufs in self._arena.values() for b in bufs.values())

    # -------- device transfer --------
    @device_call
    def copy_to_device(self, dst, host):
        """Copy a host array into an existing device buffer."""
        host = np.ascontiguousarray(host, dtype=dst.dtype).reshape(dst.shape)
        if self.use_gpu:
            dst.set(host, stream=self._stream)
        else:
            dst[...] = host

    @device_call
    def to_cpu(self, x):
        """Move array to CPU (NumPy)."""
        if self.use_gpu and x is not None:
            return cp.asnumpy(x, stream=self._stream)
        return np.array(x, copy=True)

    # -------- descriptors --------
    def _created(self, desc):
        self.live_descriptors += 1
        return desc

    def create_tensor_descriptor(self, n, c, h, w):
        return self._created(TensorDescriptor(n, c, h, w))

    def create_filter_descriptor(self, k, c, h, w):
        return self._created(FilterDescriptor(k, c, h, w))

    def create_convolution_descriptor(self, padding, stride):
        return self._created(ConvolutionDescriptor(padding, stride))

    def create_pooling_descriptor(self, window, stride):
        return self._created(PoolingDescriptor(window, stride))

    def create_activation_descriptor(self, mode):
        if mode not in ACTIVATION_MODES:
            raise ValueError(f"Unknown activation mode: {mode}. Available: {ACTIVATION_MODES}")
        return self._created(ActivationDescriptor(mode))

    def destroy_descriptor(self, desc):
        if desc is None or desc.destroyed:
            return
        desc.destroyed = True
        self.live_descriptors -= 1

    # -------- convolution algorithm selection --------
    def _im2col_indices(self, x_desc, w_desc, conv_desc):
        key = (x_desc.c, x_desc.h, x_desc.w, w_desc.h, w_desc.w, conv_desc.padding, conv_desc.stride)
        if key not in self._im2col_cache:
            xp = self.xp
            C, kh, kw = x_desc.c, w_desc.h, w_desc.w
            _, _, out_h, out_w = conv_desc.output_dim(x_desc, w_desc)
            s = conv_desc.stride

            i0 = xp.tile(xp.repeat(xp.arange(kh), kw), C)
            i1 = s * xp.repeat(xp.arange(out_h), out_w)
            j0 = xp.tile(xp.arange(kw), kh * C)
            j1 = s * xp.tile(xp.arange(out_w), out_h)

            i = i0.reshape(-1, 1) + i1.reshape(1, -1)
            j = j0.reshape(-1, 1) + j1.reshape(1, -1)
            k = xp.repeat(xp.arange(C), kh * kw).reshape(-1, 1)
            self._im2col_cache[key] = (k, i, j)
        return self._im2col_cache[key]

    def _gemm_algorithm(self, name, x_desc, w_desc, conv_desc):
        n, _, out_h, out_w = conv_desc.output_dim(x_desc, w_desc)
        cols_shape = (x_desc.c * w_desc.h * w_desc.w, out_h * out_w * n)
        nbytes = cols_shape[0] * cols_shape[1] * np.dtype(self.default_float).itemsize
        return ConvolutionAlgorithm(name, nbytes, cols_shape,
                                    self._im2col_indices(x_desc, w_desc, conv_desc))

    def get_convolution_forward_algorithm(self, x_desc, w_desc, conv_desc, y_desc):
        return self._gemm_algorithm("im2col_gemm", x_desc, w_desc, conv_desc)

    def get_convolution_backward_filter_algorithm(self, x_desc, dy_desc, conv_desc, w_desc):
        return self._gemm_algorithm("im2col_gemm_filter", x_desc, w_desc, conv_desc)

    def get_convolution_backward_data_algorithm(self, w_desc, dy_desc, conv_desc, dx_desc):
        return self._gemm_algorithm("gemm_col2im", dx_desc, w_desc, conv_desc)

    @staticmethod
    def workspace_view(workspace, algo):
        """Carve the algorithm's column matrix out of a shared workspace."""
        rows, cols = algo.cols_shape
        return workspace[:rows * cols].reshape(rows, cols)

    # -------- BLAS --------
    @device_call
    def gemm(self, a, b, c, alpha=1.0, beta=0.0, trans_a=False, trans_b=False):
        """c = alpha * op(a) @ op(b) + beta * c, in place."""
        prod = self.xp.matmul(a.T if trans_a else a, b.T if trans_b else b)
        if beta == 0.0:
            c[...] = prod if alpha == 1.0 else alpha * prod
        else:
            c *= beta
            c += alpha * prod

    @device_call
    def axpy(self, alpha, x, y):
        """y += alpha * x, in place."""
        y += alpha * x

    @device_call
    def fill(self, buf, value):
        with self.stream():
            buf.fill(value)

    def scatter_add(self, a, indices, values):
        if self.use_gpu:
            import cupyx
            cupyx.scatter_add(a, indices, values)
        else:
            np.add.at(a, indices, values)

    # -------- convolution --------
    def _im2col(self, x, conv_desc, algo, cols):
        p = conv_desc.padding
        x_padded = self.xp.pad(x, ((0, 0), (0, 0), (p, p), (p, p)), mode="constant") if p else x
        k, i, j = algo.indices
        # (N, CKK, HW) -> (CKK, HW * N)
        cols[...] = x_padded[:, k, i, j].transpose(1, 2, 0).reshape(cols.shape)

    @device_call
    def convolution_forward(self, x, w, conv_desc, algo, workspace, y):
        cols = self.workspace_view(workspace, algo)
        self._im2col(x, conv_desc, algo, cols)
        n, k, out_h, out_w = y.shape
        out = self.xp.matmul(w.reshape(k, -1), cols)
        y[...] = out.reshape(k, out_h, out_w, n).transpose(3, 0, 1, 2)

    @device_call
    def add_bias(self, b, y):
        """Broadcast a per-channel bias over batch and spatial dimensions."""
        y += b.reshape(1, -1, 1, 1)

    @device_call
    def convolution_backward_bias(self, dy, db):
        db[...] = dy.sum(axis=(0, 2, 3))

    @device_call
    def convolution_backward_filter(self, x, dy, conv_desc, algo, workspace, dw):
        cols = self.workspace_view(workspace, algo)
        self._im2col(x, conv_desc, algo, cols)
        k = dy.shape[1]
        dy_cols = dy.transpose(1, 2, 3, 0).reshape(k, -1)
        self.gemm(dy_cols, cols, dw.reshape(k, -1), trans_b=True)

    @device_call
    def convolution_backward_data(self, w, dy, conv_desc, algo, workspace, dx):
        d_cols = self.workspace_view(workspace, algo)
        k = dy.shape[1]
        dy_cols = dy.transpose(1, 2, 3, 0).reshape(k, -1)
        self.gemm(w.reshape(k, -1), dy_cols, d_cols, trans_a=True)

        n, c, h, wd = dx.shape
        p = conv_desc.padding
        dx_padded = self.xp.zeros((n, c, h + 2 * p, wd + 2 * p), dtype=dx.dtype)
        ki, i, j = algo.indices
        values = d_cols.reshape(d_cols.shape[0], -1, n).transpose(2, 0, 1)
        self.scatter_add(dx_padded, (slice(None), ki, i, j), values)
        dx[...] = dx_padded[:, :, p:p + h, p:p + wd]

    # -------- activation --------
    @device_call
    def activation_forward(self, desc, x, y):
        xp = self.xp
        if desc.mode == "sigmoid":
            y[...] = 1 / (1 + xp.exp(-xp.clip(x, -500, 500)))
        elif desc.mode == "relu":
            y[...] = xp.maximum(x, 0)
        else:
            y[...] = xp.tanh(x)

    @device_call
    def activation_backward(self, desc, y, dy, x, dx):
        if desc.mode == "sigmoid":
            dx[...] = dy * y * (1 - y)
        elif desc.mode == "relu":
            dx[...] = dy * (x > 0)
        else:
            dx[...] = dy * (1 - y * y)

    # -------- pooling --------
    def _pool_windows(self, desc, x):
        """Gather (N, C, H_out, W_out, k*k) max-pooling windows of x."""
        xp = self.xp
        n, c, h, w = x.shape
        out_h, out_w = h // desc.stride, w // desc.stride
        k = desc.window
        rows = (xp.arange(out_h) * desc.stride)[:, None] + xp.arange(k)[None, :]  # (H_out, k)
        cols = (xp.arange(out_w) * desc.stride)[:, None] + xp.arange(k)[None, :]  # (W_out, k)
        windows = x[:, :, rows[:, :, None, None], cols[None, None, :, :]]        # (N, C, H_out, k, W_out, k)
        return windows.transpose(0, 1, 2, 4, 3, 5).reshape(n, c, out_h, out_w, k * k)

    @device_call
    def pooling_forward(self, desc, x, y):
        y[...] = self._pool_windows(desc, x).max(axis=-1)

    @device_call
    def pooling_backward(self, desc, y, dy, x, dx):
        xp = self.xp
        windows = self._pool_windows(desc, x)
        # first window element equal to the stored maximum
        pos = xp.argmax(windows == y[..., None], axis=-1)
        n, c, out_h, out_w = y.shape
        k, s = desc.window, desc.stride
        h_abs = (xp.arange(out_h) * s)[None, None, :, None] + pos // k
        w_abs = (xp.arange(out_w) * s)[None, None, None, :] + pos % k
        b_idx = xp.arange(n)[:, None, None, None]
        c_idx = xp.arange(c)[None, :, None, None]
        dx.fill(0)
        self.scatter_add(dx, (b_idx, c_idx, h_abs, w_abs), dy)

    # -------- softmax --------
    @device_call
    def softmax_forward(self, x, y):
        """Accurate softmax over the channel dimension."""
        xp = self.xp
        z = xp.exp(x - xp.max(x, axis=1, keepdims=True))
        y[...] = z / xp.sum(z, axis=1, keepdims=True)

    @device_call
    def softmax_backward(self, y, dy, dx, alpha=1.0, beta=0.0):
        grad = alpha * y * (dy - self.xp.sum(dy * y, axis=1, keepdims=True))
        if beta == 0.0:
            dx[...] = grad
        else:
            dx[...] = grad + beta * dx

    @device_call
    def softmax_loss_gradient(self, probs, labels, out):
        """out = probs, minus 1.0 at each batch element's true class."""
        n = probs.shape[0]
        out[...] = probs
        flat = out.reshape(n, -1)
        flat[self.xp.arange(n), labels.astype(self.xp.int32)] -= 1.0

    # -------- randomness / stream / memory --------
    def seed(self, seed=42):
        """Seed RNG for reproducibility."""
        if self.use_gpu:
            cp.random.seed(seed)
        np.random.seed(seed)

    def stream(self):
        """Make this backend's ordered execution stream current."""
        if self.use_gpu:
            return self._stream
        return contextlib.nullcontext()

    def synchronize(self):
        """Block until all queued GPU kernels complete (for timing)."""
        if self.use_gpu:
            self._stream.synchronize()
            self.device.synchronize()

    def clear_cache(self):
        if self.use_gpu:
            cp.get_default_memory_pool().free_all_blocks()
            cp.get_default_pinned_memory_pool().free_all_blocks()

    def memory_info(self):
        if self.use_gpu:
            mempool = cp.get_default_memory_pool()
            return {
                "used_bytes": mempool.used_bytes(),
                "total_bytes": mempool.total_bytes(),
                "free_bytes": mempool.total_bytes() - mempool.used_bytes(),
            }
        return {"used_bytes": self.allocated_bytes()}
