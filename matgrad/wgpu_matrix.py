"""wgpu device-resident matrix backend.

Every arithmetic primitive runs as a precompiled WGSL compute shader on the
matrix's device. Host memory is touched only when a matrix is created from
host data and when ``to_numpy``/``copy_to_host`` is called explicitly.
"""

import logging
import struct
import threading
from typing import Dict, List, NamedTuple, Optional, Tuple

import numpy as np
import wgpu

from matgrad import config
from matgrad.errors import ContextMismatchError, KernelBuildError, ShapeMismatchError
from matgrad.matrix import Matrix

logger = logging.getLogger(__name__)

# ============================================================================
# Device Singleton
# ============================================================================

_device = None


def _get_device():
    """Get or create the default wgpu device."""
    global _device
    if _device is None:
        adapter = wgpu.gpu.request_adapter_sync(power_preference=config.POWER_PREFERENCE)
        if adapter is None:
            raise RuntimeError("No wgpu adapter available")
        _device = adapter.request_device_sync()
        logger.info(f"Using wgpu device: {describe_device(_device)}")
    return _device


def describe_device(device) -> str:
    """Human readable adapter name and backend for diagnostics."""
    try:
        info = device.adapter.info
    except AttributeError:
        return repr(device)
    return f"{info.get('device', '?')} ({info.get('backend_type', '?')})"


# ============================================================================
# WGSL Compute Shader Sources
# ============================================================================

# Shared uniform layout. rows/cols describe the output (or the operand for
# in-place kernels), inner is the contraction length for matmul.
WGSL_PARAMS = """
struct Params {
    rows: u32,
    cols: u32,
    inner: u32,
    pad0: u32,
    s0: f32,
    s1: f32,
    pad1: f32,
    pad2: f32,
}
"""

WGSL_FILL = WGSL_PARAMS + """
@group(0) @binding(0)
var<storage, read_write> dst: array<f32>;
@group(0) @binding(1)
var<uniform> params: Params;

@compute @workgroup_size(256)
fn main(@builtin(global_invocation_id) gid: vec3<u32>) {
    let idx = gid.x;
    if (idx < params.rows * params.cols) {
        dst[idx] = params.s0;
    }
}
"""

WGSL_ADD = WGSL_PARAMS + """
@group(0) @binding(0)
var<storage, read> a: array<f32>;
@group(0) @binding(1)
var<storage, read> b: array<f32>;
@group(0) @binding(2)
var<storage, read_write> dst: array<f32>;
@group(0) @binding(3)
var<uniform> params: Params;

@compute @workgroup_size(256)
fn main(@builtin(global_invocation_id) gid: vec3<u32>) {
    let idx = gid.x;
    if (idx < params.rows * params.cols) {
        dst[idx] = a[idx] + b[idx];
    }
}
"""

WGSL_SUB_MUL = WGSL_PARAMS + """
// a = a - s0 * b, in place
@group(0) @binding(0)
var<storage, read_write> a: array<f32>;
@group(0) @binding(1)
var<storage, read> b: array<f32>;
@group(0) @binding(2)
var<uniform> params: Params;

@compute @workgroup_size(256)
fn main(@builtin(global_invocation_id) gid: vec3<u32>) {
    let idx = gid.x;
    if (idx < params.rows * params.cols) {
        a[idx] = a[idx] - params.s0 * b[idx];
    }
}
"""

WGSL_TRANSPOSE = WGSL_PARAMS + """
// params.rows/cols are the input's dimensions
@group(0) @binding(0)
var<storage, read> x: array<f32>;
@group(0) @binding(1)
var<storage, read_write> dst: array<f32>;
@group(0) @binding(2)
var<uniform> params: Params;

@compute @workgroup_size(16, 16)
fn main(@builtin(global_invocation_id) gid: vec3<u32>) {
    let rows = params.rows;
    let cols = params.cols;
    let i = gid.y;
    let j = gid.x;

    if (i < rows && j < cols) {
        dst[j * rows + i] = x[i * cols + j];
    }
}
"""

WGSL_MATMUL = WGSL_PARAMS + """
// out (rows x cols) = a (rows x inner) * b (inner x cols), 16x16 tiles
@group(0) @binding(0)
var<storage, read> a: array<f32>;
@group(0) @binding(1)
var<storage, read> b: array<f32>;
@group(0) @binding(2)
var<storage, read_write> dst: array<f32>;
@group(0) @binding(3)
var<uniform> params: Params;

var<workgroup> tile_a: array<f32, 256>;
var<workgroup> tile_b: array<f32, 256>;

@compute @workgroup_size(16, 16)
fn main(
    @builtin(local_invocation_id) lid: vec3<u32>,
    @builtin(workgroup_id) wid: vec3<u32>,
) {
    let m = params.rows;
    let n = params.cols;
    let k = params.inner;
    let lx = lid.x;
    let ly = lid.y;

    let row = wid.y * 16u + ly;
    let col = wid.x * 16u + lx;

    var result = 0.0;

    var tile_idx = 0u;
    loop {
        if (tile_idx >= k) { break; }

        let a_col = tile_idx + lx;
        var a_val = 0.0;
        if (row < m && a_col < k) {
            a_val = a[row * k + a_col];
        }
        tile_a[ly * 16u + lx] = a_val;

        let b_row = tile_idx + ly;
        var b_val = 0.0;
        if (b_row < k && col < n) {
            b_val = b[b_row * n + col];
        }
        tile_b[ly * 16u + lx] = b_val;

        workgroupBarrier();

        for (var i = 0u; i < 16u; i = i + 1u) {
            result = result + tile_a[ly * 16u + i] * tile_b[i * 16u + lx];
        }

        workgroupBarrier();
        tile_idx = tile_idx + 16u;
    }

    if (row < m && col < n) {
        dst[row * n + col] = result;
    }
}
"""

WGSL_SIGMOID = WGSL_PARAMS + """
@group(0) @binding(0)
var<storage, read> x: array<f32>;
@group(0) @binding(1)
var<storage, read_write> dst: array<f32>;
@group(0) @binding(2)
var<uniform> params: Params;

@compute @workgroup_size(256)
fn main(@builtin(global_invocation_id) gid: vec3<u32>) {
    let idx = gid.x;
    if (idx < params.rows * params.cols) {
        dst[idx] = 1.0 / (1.0 + exp(-x[idx]));
    }
}
"""

WGSL_SIGMOID_BACKWARD = WGSL_PARAMS + """
// grad_in += grad_out * s * (1 - s), s = sigmoid(x) of the forward input
@group(0) @binding(0)
var<storage, read_write> grad_in: array<f32>;
@group(0) @binding(1)
var<storage, read> x: array<f32>;
@group(0) @binding(2)
var<storage, read> grad_out: array<f32>;
@group(0) @binding(3)
var<uniform> params: Params;

@compute @workgroup_size(256)
fn main(@builtin(global_invocation_id) gid: vec3<u32>) {
    let idx = gid.x;
    if (idx < params.rows * params.cols) {
        let s = 1.0 / (1.0 + exp(-x[idx]));
        grad_in[idx] = grad_in[idx] + grad_out[idx] * s * (1.0 - s);
    }
}
"""

WGSL_BCE = WGSL_PARAMS + """
// params.s0 = epsilon
@group(0) @binding(0)
var<storage, read> preds: array<f32>;
@group(0) @binding(1)
var<storage, read> targets: array<f32>;
@group(0) @binding(2)
var<storage, read_write> dst: array<f32>;
@group(0) @binding(3)
var<uniform> params: Params;

@compute @workgroup_size(256)
fn main(@builtin(global_invocation_id) gid: vec3<u32>) {
    let idx = gid.x;
    if (idx < params.rows * params.cols) {
        let p = preds[idx];
        let t = targets[idx];
        let eps = params.s0;
        dst[idx] = -t * log(p + eps) - (1.0 - t) * log(1.0 - p + eps);
    }
}
"""

WGSL_BCE_BACKWARD = WGSL_PARAMS + """
// grad += upstream[0] * s1 * dBCE/dp, params.s0 = epsilon, params.s1 = 1 / N
@group(0) @binding(0)
var<storage, read_write> grad: array<f32>;
@group(0) @binding(1)
var<storage, read> preds: array<f32>;
@group(0) @binding(2)
var<storage, read> targets: array<f32>;
@group(0) @binding(3)
var<storage, read> upstream: array<f32>;
@group(0) @binding(4)
var<uniform> params: Params;

@compute @workgroup_size(256)
fn main(@builtin(global_invocation_id) gid: vec3<u32>) {
    let idx = gid.x;
    if (idx < params.rows * params.cols) {
        let p = preds[idx];
        let t = targets[idx];
        let eps = params.s0;
        let d1 = max(p + eps, eps);
        let d2 = max(1.0 - p + eps, eps);
        grad[idx] = grad[idx] + upstream[0] * params.s1 * (-t / d1 + (1.0 - t) / d2);
    }
}
"""

WGSL_SUM = WGSL_PARAMS + """
// Single workgroup: dst[0] = s0 * sum(x)
@group(0) @binding(0)
var<storage, read> x: array<f32>;
@group(0) @binding(1)
var<storage, read_write> dst: array<f32>;
@group(0) @binding(2)
var<uniform> params: Params;

var<workgroup> partial: array<f32, 256>;

@compute @workgroup_size(256)
fn main(@builtin(local_invocation_id) lid: vec3<u32>) {
    let numel = params.rows * params.cols;
    let tid = lid.x;

    var acc = 0.0;
    var i = tid;
    loop {
        if (i >= numel) { break; }
        acc = acc + x[i];
        i = i + 256u;
    }
    partial[tid] = acc;
    workgroupBarrier();

    var stride = 128u;
    loop {
        if (stride == 0u) { break; }
        if (tid < stride) {
            partial[tid] = partial[tid] + partial[tid + stride];
        }
        workgroupBarrier();
        stride = stride >> 1u;
    }

    if (tid == 0u) {
        dst[0] = partial[0] * params.s0;
    }
}
"""


class KernelSpec(NamedTuple):
    source: str
    bindings: Tuple[str, ...]  # "read", "read_write" or "uniform" per binding


KERNELS: Dict[str, KernelSpec] = {
    "fill": KernelSpec(WGSL_FILL, ("read_write", "uniform")),
    "add": KernelSpec(WGSL_ADD, ("read", "read", "read_write", "uniform")),
    "sub_mul": KernelSpec(WGSL_SUB_MUL, ("read_write", "read", "uniform")),
    "transpose": KernelSpec(WGSL_TRANSPOSE, ("read", "read_write", "uniform")),
    "matmul": KernelSpec(WGSL_MATMUL, ("read", "read", "read_write", "uniform")),
    "sigmoid": KernelSpec(WGSL_SIGMOID, ("read", "read_write", "uniform")),
    "sigmoid_backward": KernelSpec(WGSL_SIGMOID_BACKWARD, ("read_write", "read", "read", "uniform")),
    "bce": KernelSpec(WGSL_BCE, ("read", "read", "read_write", "uniform")),
    "bce_backward": KernelSpec(WGSL_BCE_BACKWARD, ("read_write", "read", "read", "read", "uniform")),
    "sum": KernelSpec(WGSL_SUM, ("read", "read_write", "uniform")),
}

_BINDING_TYPES = {
    "read": "read-only-storage",
    "read_write": "storage",
    "uniform": "uniform",
}


# ============================================================================
# Kernel Cache
# ============================================================================

class CompiledKernel(NamedTuple):
    pipeline: object
    layout: object


class KernelCache:
    """Compute pipelines for every kernel, compiled for one device."""

    def __init__(self, device, kernels: Optional[Dict[str, KernelSpec]] = None):
        self.device = device
        self.kernels: Dict[str, CompiledKernel] = {}
        self._kernel_specs = KERNELS if kernels is None else kernels

    def compile(self) -> None:
        """Build every kernel. Raises KernelBuildError on the first failure."""
        device = self.device
        compiled = {}
        for name, kernel_spec in self._kernel_specs.items():
            try:
                shader_module = device.create_shader_module(label=name, code=kernel_spec.source)
                entries = [
                    {
                        "binding": i,
                        "visibility": wgpu.ShaderStage.COMPUTE,
                        "buffer": {"type": _BINDING_TYPES[access], "has_dynamic_offset": False},
                    }
                    for i, access in enumerate(kernel_spec.bindings)
                ]
                layout = device.create_bind_group_layout(entries=entries)
                pipeline = device.create_compute_pipeline(
                    layout=device.create_pipeline_layout(bind_group_layouts=[layout]),
                    compute={"module": shader_module, "entry_point": "main"},
                )
            except (wgpu.GPUError, wgpu.GPUPipelineError) as err:
                logger.error(f"Kernel '{name}' failed to build on {describe_device(device)}")
                raise KernelBuildError(name, describe_device(device), str(err)) from err
            compiled[name] = CompiledKernel(pipeline, layout)
        self.kernels = compiled

    def __getitem__(self, name: str) -> CompiledKernel:
        return self.kernels[name]


_kernel_caches: Dict[object, KernelCache] = {}
_kernel_lock = threading.Lock()


def initialize_kernels(device=None, kernels: Optional[Dict[str, KernelSpec]] = None) -> KernelCache:
    """Compile all kernels for ``device`` once. Later calls are no-ops.

    Args:
        device: wgpu device, defaults to the shared default device
        kernels: kernel table override (defaults to KERNELS)

    Returns:
        The device's KernelCache.
    """
    device = device or _get_device()
    with _kernel_lock:
        cache = _kernel_caches.get(device)
        if cache is not None:
            logger.debug("Kernels already compiled for this device")
            return cache
        logger.info(f"Compiling {len(kernels or KERNELS)} WGSL kernels for {describe_device(device)}")
        cache = KernelCache(device, kernels)
        # only a fully built cache is registered
        cache.compile()
        _kernel_caches[device] = cache
        return cache


def _kernels_for(device) -> KernelCache:
    cache = _kernel_caches.get(device)
    if cache is None:
        cache = initialize_kernels(device)
    return cache


# ============================================================================
# Dispatch Helper
# ============================================================================

def _params_buffer(device, rows, cols, inner=0, s0=0.0, s1=0.0):
    data = struct.pack("<4I4f", rows, cols, inner, 0, s0, s1, 0.0, 0.0)
    return device.create_buffer_with_data(
        data=data,
        usage=wgpu.BufferUsage.UNIFORM | wgpu.BufferUsage.COPY_DST,
    )


def _dispatch(device, kernel_name: str, buffers: List, workgroups: Tuple[int, ...]) -> None:
    """Enqueue one kernel on the device queue without waiting for it.

    Args:
        device: wgpu device owning every buffer
        kernel_name: key into KERNELS
        buffers: GPU buffers in binding order
        workgroups: (x,) or (x, y) workgroup counts
    """
    kernel = _kernels_for(device)[kernel_name]
    bind_group = device.create_bind_group(
        layout=kernel.layout,
        entries=[
            {"binding": i, "resource": {"buffer": buf, "offset": 0, "size": buf.size}}
            for i, buf in enumerate(buffers)
        ],
    )
    command_encoder = device.create_command_encoder()
    compute_pass = command_encoder.begin_compute_pass()
    compute_pass.set_pipeline(kernel.pipeline)
    compute_pass.set_bind_group(0, bind_group)
    compute_pass.dispatch_workgroups(*workgroups)
    compute_pass.end()
    device.queue.submit([command_encoder.finish()])


def _linear_groups(numel: int) -> Tuple[int]:
    return ((numel + config.WORKGROUP_SIZE - 1) // config.WORKGROUP_SIZE,)


def _tile_groups(rows: int, cols: int) -> Tuple[int, int]:
    tile = config.TILE_SIZE
    return ((cols + tile - 1) // tile, (rows + tile - 1) // tile)


# ============================================================================
# WgpuMatrix Class
# ============================================================================

_STORAGE_USAGE = wgpu.BufferUsage.STORAGE | wgpu.BufferUsage.COPY_DST | wgpu.BufferUsage.COPY_SRC


class WgpuMatrix(Matrix):
    """Row-major float32 matrix stored in a wgpu storage buffer."""

    bce_epsilon = config.BCE_EPSILON_DEVICE

    def __init__(self, rows: int, cols: int, device=None, data=None):
        """Allocate a matrix on ``device``.

        Args:
            rows: number of rows
            cols: number of columns
            device: wgpu device (its queue executes every operation), defaults
                to the shared default device
            data: optional host values (rows * cols floats); zero-filled if None
        """
        if rows < 0 or cols < 0:
            raise ValueError(f"Invalid matrix shape ({rows}, {cols})")
        self.rows = rows
        self.cols = cols
        self.device = device or _get_device()
        # zero-sized bindings are invalid
        nbytes = max(rows * cols, 1) * 4
        if data is None:
            # WebGPU zero-initializes new buffers
            self.buffer = self.device.create_buffer(size=nbytes, usage=_STORAGE_USAGE)
        else:
            arr = np.ascontiguousarray(np.asarray(data, dtype=np.float32).reshape(-1))
            if arr.size != rows * cols:
                raise ShapeMismatchError(
                    f"Cannot build a {rows}x{cols} matrix from {arr.size} values"
                )
            if arr.size == 0:
                arr = np.zeros(1, dtype=np.float32)
            self.buffer = self.device.create_buffer_with_data(data=arr.tobytes(), usage=_STORAGE_USAGE)

    @property
    def queue(self):
        return self.device.queue

    # ---- Factory Methods ----
    @staticmethod
    def from_numpy(arr, device=None) -> "WgpuMatrix":
        arr = np.asarray(arr)
        if arr.ndim != 2:
            raise ValueError(f"Expected a 2D array, got shape {arr.shape}")
        return WgpuMatrix(arr.shape[0], arr.shape[1], device=device, data=arr)

    def zeros_like(self) -> "WgpuMatrix":
        return WgpuMatrix(self.rows, self.cols, device=self.device)

    def _empty(self, rows, cols) -> "WgpuMatrix":
        return WgpuMatrix(rows, cols, device=self.device)

    def copy(self) -> "WgpuMatrix":
        """Device-to-device copy."""
        out = self.zeros_like()
        command_encoder = self.device.create_command_encoder()
        command_encoder.copy_buffer_to_buffer(self.buffer, 0, out.buffer, 0, self.buffer.size)
        self.queue.submit([command_encoder.finish()])
        return out

    # ---- Data Transfer ----
    def to_numpy(self) -> np.ndarray:
        """Read the matrix back to the host. Waits for queued work."""
        data = self.queue.read_buffer(self.buffer)
        arr = np.frombuffer(data, dtype=np.float32)[: self.rows * self.cols].copy()
        return arr.reshape(self.rows, self.cols)

    def copy_to_host(self) -> List[float]:
        """Row-major list of the matrix's values."""
        return self.to_numpy().reshape(-1).tolist()

    # ---- Checks ----
    def _check_context(self, *others) -> None:
        for other in others:
            if not isinstance(other, WgpuMatrix):
                raise TypeError(f"Expected a WgpuMatrix, got {type(other).__name__}")
            if other.device is not self.device:
                raise ContextMismatchError(
                    "Cannot combine matrices from different wgpu devices/queues: "
                    f"{describe_device(self.device)} vs {describe_device(other.device)}"
                )

    def _check_same_shape(self, other, what) -> None:
        if self.shape != other.shape:
            raise ShapeMismatchError(
                f"Matrix dimensions do not match for {what}: {self.shape} vs {other.shape}"
            )

    # ---- In-place ----
    def fill(self, value: float) -> None:
        if self.numel() == 0:
            return
        params = _params_buffer(self.device, self.rows, self.cols, s0=value)
        _dispatch(self.device, "fill", [self.buffer, params], _linear_groups(self.numel()))

    def sub_mul(self, scalar: float, other: "WgpuMatrix") -> None:
        self._check_context(other)
        self._check_same_shape(other, "sub_mul")
        if self.numel() == 0:
            return
        if other.buffer is self.buffer:
            other = other.copy()
        params = _params_buffer(self.device, self.rows, self.cols, s0=scalar)
        _dispatch(self.device, "sub_mul", [self.buffer, other.buffer, params],
                  _linear_groups(self.numel()))

    def add_(self, other: "WgpuMatrix") -> None:
        # a += b is sub_mul with a negated scale
        self.sub_mul(-1.0, other)

    # ---- Arithmetic ----
    def __add__(self, other):
        if not isinstance(other, WgpuMatrix):
            return NotImplemented
        self._check_context(other)
        self._check_same_shape(other, "addition")
        out = self.zeros_like()
        if self.numel():
            params = _params_buffer(self.device, self.rows, self.cols)
            _dispatch(self.device, "add", [self.buffer, other.buffer, out.buffer, params],
                      _linear_groups(self.numel()))
        return out

    def __matmul__(self, other):
        if not isinstance(other, WgpuMatrix):
            return NotImplemented
        self._check_context(other)
        if self.cols != other.rows:
            raise ShapeMismatchError(
                f"Matrix dimensions do not match for multiplication: "
                f"{self.shape} @ {other.shape}"
            )
        out = self._empty(self.rows, other.cols)
        if out.numel():
            params = _params_buffer(self.device, self.rows, other.cols, inner=self.cols)
            _dispatch(self.device, "matmul", [self.buffer, other.buffer, out.buffer, params],
                      _tile_groups(self.rows, other.cols))
        return out

    def transpose(self) -> "WgpuMatrix":
        out = self._empty(self.cols, self.rows)
        if self.numel():
            params = _params_buffer(self.device, self.rows, self.cols)
            _dispatch(self.device, "transpose", [self.buffer, out.buffer, params],
                      _tile_groups(self.rows, self.cols))
        return out

    # ---- Activation & Loss ----
    def sigmoid(self) -> "WgpuMatrix":
        out = self.zeros_like()
        if self.numel():
            params = _params_buffer(self.device, self.rows, self.cols)
            _dispatch(self.device, "sigmoid", [self.buffer, out.buffer, params],
                      _linear_groups(self.numel()))
        return out

    def sigmoid_backward_(self, inputs: "WgpuMatrix", out_grad: "WgpuMatrix") -> None:
        self._check_context(inputs, out_grad)
        self._check_same_shape(inputs, "sigmoid_backward")
        self._check_same_shape(out_grad, "sigmoid_backward")
        if self.numel() == 0:
            return
        params = _params_buffer(self.device, self.rows, self.cols)
        _dispatch(self.device, "sigmoid_backward",
                  [self.buffer, inputs.buffer, out_grad.buffer, params],
                  _linear_groups(self.numel()))

    def binary_cross_entropy(self, targets: "WgpuMatrix", eps: float) -> "WgpuMatrix":
        self._check_context(targets)
        self._check_same_shape(targets, "binary_cross_entropy")
        out = self.zeros_like()
        if self.numel():
            params = _params_buffer(self.device, self.rows, self.cols, s0=eps)
            _dispatch(self.device, "bce", [self.buffer, targets.buffer, out.buffer, params],
                      _linear_groups(self.numel()))
        return out

    def bce_backward_(self, predictions: "WgpuMatrix", targets: "WgpuMatrix",
                      upstream: "WgpuMatrix", eps: float) -> None:
        self._check_context(predictions, targets, upstream)
        self._check_same_shape(predictions, "bce_backward")
        self._check_same_shape(targets, "bce_backward")
        numel = self.numel()
        if numel == 0:
            return
        params = _params_buffer(self.device, self.rows, self.cols, s0=eps, s1=1.0 / numel)
        _dispatch(self.device, "bce_backward",
                  [self.buffer, predictions.buffer, targets.buffer, upstream.buffer, params],
                  _linear_groups(numel))

    def mean(self) -> "WgpuMatrix":
        numel = self.numel()
        if numel == 0:
            raise ValueError("mean of an empty matrix")
        out = self._empty(1, 1)
        params = _params_buffer(self.device, self.rows, self.cols, s0=1.0 / numel)
        _dispatch(self.device, "sum", [self.buffer, out.buffer, params], (1,))
        return out

    def __repr__(self):
        return f"WgpuMatrix({self.rows}x{self.cols})"
