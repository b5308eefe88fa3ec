"""wgpu accelerator backend.

Tensors are float32 (or u32-backed bool) storage buffers; operations run as
WGSL compute shaders. Reshape is metadata only; every other operation writes
a fresh buffer, so buffers are never mutated once filled. Slicing, slice
assignment, concatenation and random sampling round-trip through the host.
"""

from typing import Optional, Sequence, Tuple
import logging
import struct

import numpy as np
import wgpu
import wgpu.backends.wgpu_native  # noqa: F401

from autodiff_ml.backend import (
    Backend, Device, Ranges, Shape,
    as_index, broadcast_shape, normalize_dim, slice_shape,
)
from autodiff_ml.config import get_settings
from autodiff_ml.distribution import Distribution
from autodiff_ml.errors import BackendError, ShapeMismatchError

logger = logging.getLogger(__name__)

GPU = Device("gpu", 0)

_WORKGROUP = 256
_MAX_GROUPS = 65535

# ============================================================================
# Device Singleton & Pipeline Cache
# ============================================================================

_device = None
_pipeline_cache = {}


def _get_device():
    """Get or create the wgpu device singleton."""
    global _device
    if _device is None:
        power = get_settings().power_preference
        adapter = wgpu.gpu.request_adapter_sync(power_preference=power)
        if adapter is None:
            raise BackendError("wgpu: no GPU adapter available")
        _device = adapter.request_device_sync()
        logger.debug("wgpu device on adapter %s", adapter.info.get("device", "?"))
    return _device


def gpu_available() -> bool:
    """Whether a wgpu adapter can be opened in this process."""
    try:
        _get_device()
    except Exception as exc:
        logger.debug("wgpu unavailable: %s", exc)
        return False
    return True


# ============================================================================
# WGSL Compute Shader Sources
# ============================================================================

# 1-D kernels index with a 2-D grid so large tensors fit the 65535 group limit.
_INDEX = "let idx = gid.x + gid.y * nwg.x * 256u;"

_ENTRY = ("@compute @workgroup_size(256)\n"
          "fn main(@builtin(global_invocation_id) gid: vec3<u32>,\n"
          "        @builtin(num_workgroups) nwg: vec3<u32>) {\n"
          "    " + _INDEX + "\n")

WGSL_BINARY = """
@group(0) @binding(0) var<storage, read> a: array<f32>;
@group(0) @binding(1) var<storage, read> b: array<f32>;
@group(0) @binding(2) var<storage, read_write> out: array<__OUT__>;

""" + _ENTRY + """
    if (idx < arrayLength(&out)) {
        let x = a[idx];
        let y = b[idx];
        out[idx] = __EXPR__;
    }
}
"""

WGSL_UNARY = """
@group(0) @binding(0) var<storage, read> src: array<f32>;
@group(0) @binding(1) var<storage, read_write> out: array<__OUT__>;
@group(0) @binding(2) var<uniform> params: vec4<f32>;

fn powf(v: f32, s: f32) -> f32 {
    if (s == 0.0) { return 1.0; }
    var r = pow(abs(v), s);
    if (v < 0.0) {
        if (fract(s) != 0.0) { return sqrt(v); }
        if (abs(s % 2.0) == 1.0) { r = -r; }
    }
    return r;
}

""" + _ENTRY + """
    if (idx < arrayLength(&out)) {
        let v = src[idx];
        let s = params.x;
        out[idx] = __EXPR__;
    }
}
"""

WGSL_MASK_FILL = """
@group(0) @binding(0) var<storage, read> src: array<f32>;
@group(0) @binding(1) var<storage, read> mask: array<u32>;
@group(0) @binding(2) var<storage, read_write> out: array<f32>;
@group(0) @binding(3) var<uniform> params: vec4<f32>;

""" + _ENTRY + """
    if (idx < arrayLength(&out)) {
        out[idx] = select(src[idx], params.x, mask[idx] != 0u);
    }
}
"""

# View (outer, n, inner) -> (outer, inner), summing over n.
WGSL_REDUCE_AXIS = """
@group(0) @binding(0) var<storage, read> src: array<f32>;
@group(0) @binding(1) var<storage, read_write> out: array<f32>;
@group(0) @binding(2) var<uniform> params: vec4<u32>;

""" + _ENTRY + """
    let n = params.y;
    let inner = params.z;
    if (idx < arrayLength(&out)) {
        let o = idx / inner;
        let i = idx % inner;
        var acc = 0.0;
        for (var j = 0u; j < n; j = j + 1u) {
            acc = acc + src[(o * n + j) * inner + i];
        }
        out[idx] = acc;
    }
}
"""

# View (outer, 1, inner) -> (outer, n, inner).
WGSL_REPEAT_AXIS = """
@group(0) @binding(0) var<storage, read> src: array<__T__>;
@group(0) @binding(1) var<storage, read_write> out: array<__T__>;
@group(0) @binding(2) var<uniform> params: vec4<u32>;

""" + _ENTRY + """
    let n = params.y;
    let inner = params.z;
    if (idx < arrayLength(&out)) {
        let o = idx / (n * inner);
        let i = idx % inner;
        out[idx] = src[o * inner + i];
    }
}
"""

# View (a, m, b, n, c) -> (a, n, b, m, c).
WGSL_SWAP_DIMS = """
struct SwapParams {
    a: u32, m: u32, b: u32, n: u32,
    c: u32, pad0: u32, pad1: u32, pad2: u32,
};

@group(0) @binding(0) var<storage, read> src: array<f32>;
@group(0) @binding(1) var<storage, read_write> out: array<f32>;
@group(0) @binding(2) var<uniform> p: SwapParams;

""" + _ENTRY + """
    if (idx < arrayLength(&out)) {
        let ci = idx % p.c;
        var r = idx / p.c;
        let mi = r % p.m;
        r = r / p.m;
        let bi = r % p.b;
        r = r / p.b;
        let ni = r % p.n;
        let ai = r / p.n;
        out[idx] = src[(((ai * p.m + mi) * p.b + bi) * p.n + ni) * p.c + ci];
    }
}
"""

# Tiled batched matmul, one batch per workgroup z.
WGSL_MATMUL = """
@group(0) @binding(0) var<storage, read> a: array<f32>;
@group(0) @binding(1) var<storage, read> b: array<f32>;
@group(0) @binding(2) var<storage, read_write> out: array<f32>;
@group(0) @binding(3) var<uniform> params: vec4<u32>;

var<workgroup> tile_a: array<f32, 256>;
var<workgroup> tile_b: array<f32, 256>;

@compute @workgroup_size(16, 16)
fn main(
    @builtin(local_invocation_id) lid: vec3<u32>,
    @builtin(workgroup_id) wid: vec3<u32>,
) {
    let m = params.x;
    let n = params.y;
    let k = params.z;
    let lx = lid.x;
    let ly = lid.y;
    let a_off = wid.z * m * k;
    let b_off = wid.z * k * n;

    let row = wid.y * 16u + ly;
    let col = wid.x * 16u + lx;

    var result = 0.0;

    var tile_idx = 0u;
    loop {
        if (tile_idx >= k) { break; }

        let a_col = tile_idx + lx;
        var va = 0.0;
        if (row < m && a_col < k) { va = a[a_off + row * k + a_col]; }
        tile_a[ly * 16u + lx] = va;

        let b_row = tile_idx + ly;
        var vb = 0.0;
        if (b_row < k && col < n) { vb = b[b_off + b_row * n + col]; }
        tile_b[ly * 16u + lx] = vb;

        workgroupBarrier();

        for (var i = 0u; i < 16u; i = i + 1u) {
            result = result + tile_a[ly * 16u + i] * tile_b[i * 16u + lx];
        }

        workgroupBarrier();
        tile_idx = tile_idx + 16u;
    }

    if (row < m && col < n) {
        out[wid.z * m * n + row * n + col] = result;
    }
}
"""

_BINARY_EXPR = {
    "add": "x + y",
    "sub": "x - y",
    "mul": "x * y",
    "div": "x / y",
}

_UNARY_EXPR = {
    "neg": "-v",
    "exp": "exp(v)",
    "log": "log(v)",
    "tanh": "tanh(v)",
    "relu": "max(v, 0.0)",
    "add_scalar": "v + s",
    "sub_scalar": "v - s",
    "mul_scalar": "v * s",
    "div_scalar": "v / s",
    "powf": "powf(v, s)",
}

_COMPARE_EXPR = {
    "greater_elem": "select(0u, 1u, v > s)",
    "lower_equal_elem": "select(0u, 1u, v <= s)",
}


def _binary_shader(expr: str, out_type: str = "f32") -> str:
    return WGSL_BINARY.replace("__OUT__", out_type).replace("__EXPR__", expr)


def _unary_shader(expr: str, out_type: str = "f32") -> str:
    return WGSL_UNARY.replace("__OUT__", out_type).replace("__EXPR__", expr)


# ============================================================================
# Dispatch Helper
# ============================================================================

def _dispatch_shader(device, wgsl_code, buffers, workgroups):
    """Execute a compute shader on GPU.

    Args:
        device: wgpu device
        wgsl_code: WGSL source code string
        buffers: list of (wgpu.GPUBuffer, access_mode) tuples,
            access_mode is "read", "read_write" or "uniform"
        workgroups: tuple (x, y=1, z=1) for dispatch
    """
    pipeline = _pipeline_cache.get(wgsl_code)
    if pipeline is None:
        shader_module = device.create_shader_module(code=wgsl_code)
        buffer_types = {"read": "read-only-storage", "uniform": "uniform", "read_write": "storage"}
        entries = [
            {
                "binding": i,
                "visibility": wgpu.ShaderStage.COMPUTE,
                "buffer": {"type": buffer_types[access], "has_dynamic_offset": False},
            }
            for i, (_, access) in enumerate(buffers)
        ]
        bind_group_layout = device.create_bind_group_layout(entries=entries)
        pipeline_layout = device.create_pipeline_layout(bind_group_layouts=[bind_group_layout])
        pipeline = device.create_compute_pipeline(
            layout=pipeline_layout,
            compute={"module": shader_module, "entry_point": "main"},
        )
        _pipeline_cache[wgsl_code] = pipeline

    bind_group = device.create_bind_group(
        layout=pipeline.get_bind_group_layout(0),
        entries=[
            {"binding": i, "resource": {"buffer": buf, "offset": 0, "size": buf.size}}
            for i, (buf, _) in enumerate(buffers)
        ],
    )

    command_encoder = device.create_command_encoder()
    compute_pass = command_encoder.begin_compute_pass()
    compute_pass.set_pipeline(pipeline)
    compute_pass.set_bind_group(0, bind_group)
    x, y, z = (tuple(workgroups) + (1, 1))[:3]
    compute_pass.dispatch_workgroups(x, y, z)
    compute_pass.end()
    device.queue.submit([command_encoder.finish()])


def _grid(numel: int) -> Tuple[int, int]:
    groups = (numel + _WORKGROUP - 1) // _WORKGROUP
    if groups <= _MAX_GROUPS:
        return groups, 1
    return _MAX_GROUPS, (groups + _MAX_GROUPS - 1) // _MAX_GROUPS


def _uniform(device, fmt: str, *values):
    return device.create_buffer_with_data(
        data=struct.pack(fmt, *values),
        usage=wgpu.BufferUsage.UNIFORM | wgpu.BufferUsage.COPY_DST,
    )


def _prod(dims) -> int:
    result = 1
    for d in dims:
        result *= d
    return result


# ============================================================================
# WgpuTensor
# ============================================================================

class WgpuTensor:
    """GPU tensor: a storage buffer plus shape and dtype ("float32" or "bool")."""

    _np_dtypes = {"float32": np.float32, "bool": np.uint32}

    def __init__(self, buffer, shape, dtype="float32"):
        self.buffer = buffer
        self._shape = tuple(int(s) for s in shape)
        self.dtype = dtype

    @property
    def shape(self):
        return self._shape

    @property
    def ndim(self):
        return len(self._shape)

    def numel(self):
        return _prod(self._shape)

    @staticmethod
    def empty(shape, dtype="float32"):
        device = _get_device()
        numel = _prod(shape)
        buffer = device.create_buffer(
            size=max(numel, 1) * 4,
            usage=wgpu.BufferUsage.STORAGE | wgpu.BufferUsage.COPY_DST | wgpu.BufferUsage.COPY_SRC,
        )
        return WgpuTensor(buffer, shape, dtype)

    @staticmethod
    def from_numpy(arr, dtype="float32"):
        """Upload a host array (float32, or bool stored as u32)."""
        device = _get_device()
        arr_c = np.ascontiguousarray(arr, dtype=WgpuTensor._np_dtypes[dtype])
        data = arr_c.tobytes() if arr_c.size else b"\x00" * 4
        buffer = device.create_buffer_with_data(
            data=data,
            usage=wgpu.BufferUsage.STORAGE | wgpu.BufferUsage.COPY_DST | wgpu.BufferUsage.COPY_SRC,
        )
        return WgpuTensor(buffer, arr_c.shape, dtype)

    def numpy(self):
        """Read tensor data back to CPU as numpy array."""
        device = _get_device()
        raw = device.queue.read_buffer(self.buffer)
        arr = np.frombuffer(raw, dtype=self._np_dtypes[self.dtype])[:self.numel()].copy()
        arr = arr.reshape(self._shape)
        if self.dtype == "bool":
            return arr != 0
        return arr

    def view(self, shape):
        """Same buffer, new shape (no copy)."""
        return WgpuTensor(self.buffer, shape, self.dtype)

    def __repr__(self):
        return f"WgpuTensor(shape={self._shape}, dtype={self.dtype})"


# ============================================================================
# Backend
# ============================================================================

class WgpuBackend(Backend):
    """Array-on-accelerator backend over wgpu compute shaders (float32)."""

    dtype = "float32"

    def __init__(self, seed: Optional[int] = None):
        settings = get_settings()
        self.rng = np.random.default_rng(settings.seed if seed is None else seed)
        self._device = _get_device()

    # ---- identity ----
    def name(self) -> str:
        return "wgpu"

    def default_device(self) -> Device:
        return GPU

    def full_precision(self) -> "WgpuBackend":
        return self

    def _check_device(self, device):
        if device is not None and device != GPU:
            raise BackendError(f"wgpu: unsupported device {device}")

    # ---- kernels ----
    def _run_1d(self, shader, inputs, out, uniform=None):
        numel = out.numel()
        if numel == 0:
            return out
        buffers = [(t.buffer, "read") for t in inputs] + [(out.buffer, "read_write")]
        if uniform is not None:
            buffers.append((uniform, "uniform"))
        _dispatch_shader(self._device, shader, buffers, _grid(numel))
        return out

    def _binary(self, op, lhs, rhs, out_dtype="float32", expr=None):
        shape = broadcast_shape(lhs.shape, rhs.shape)
        lhs = self.expand(lhs, shape)
        rhs = self.expand(rhs, shape)
        out = WgpuTensor.empty(shape, out_dtype)
        shader = _binary_shader(expr or _BINARY_EXPR[op], "u32" if out_dtype == "bool" else "f32")
        return self._run_1d(shader, [lhs, rhs], out)

    def _unary(self, tensor, expr, scalar=0.0, out_dtype="float32"):
        out = WgpuTensor.empty(tensor.shape, out_dtype)
        uniform = _uniform(self._device, "4f", float(scalar), 0.0, 0.0, 0.0)
        shader = _unary_shader(expr, "u32" if out_dtype == "bool" else "f32")
        return self._run_1d(shader, [tensor], out, uniform)

    def _repeat_axis(self, tensor, axis, n):
        shape = tensor.shape
        outer, inner = _prod(shape[:axis]), _prod(shape[axis + 1:])
        out_shape = shape[:axis] + (n,) + shape[axis + 1:]
        out = WgpuTensor.empty(out_shape, tensor.dtype)
        wgsl_type = "u32" if tensor.dtype == "bool" else "f32"
        uniform = _uniform(self._device, "4I", outer, n, inner, 0)
        return self._run_1d(WGSL_REPEAT_AXIS.replace("__T__", wgsl_type), [tensor], out, uniform)

    def _host(self, tensor):
        logger.debug("wgpu: host round trip for %s", tensor.shape)
        return tensor.numpy()

    # ---- creation ----
    def from_data(self, data, device=None):
        self._check_device(device)
        arr = np.asarray(data, dtype=np.float32)
        if arr.ndim == 0:
            arr = arr.reshape(1)
        return WgpuTensor.from_numpy(arr)

    def from_data_bool(self, data, device=None):
        self._check_device(device)
        arr = np.asarray(data, dtype=np.bool_)
        if arr.ndim == 0:
            arr = arr.reshape(1)
        return WgpuTensor.from_numpy(arr, dtype="bool")

    def random(self, shape: Shape, distribution: Distribution, device=None):
        return self.from_data(distribution.sample(shape, self.rng), device)

    def zeros(self, shape: Shape, device=None):
        # Fresh buffers are zero-initialised.
        self._check_device(device)
        return WgpuTensor.empty(tuple(shape))

    def ones(self, shape: Shape, device=None):
        self._check_device(device)
        return WgpuTensor.from_numpy(np.ones(tuple(shape), dtype=np.float32))

    # ---- data / metadata ----
    def to_data(self, tensor):
        return tensor.numpy()

    def bool_to_data(self, tensor):
        return tensor.numpy().astype(np.bool_)

    def shape(self, tensor) -> Shape:
        return tensor.shape

    def device(self, tensor) -> Device:
        return GPU

    def to_device(self, tensor, device):
        self._check_device(device)
        return tensor

    def clone(self, tensor):
        out = WgpuTensor.empty(tensor.shape, tensor.dtype)
        command_encoder = self._device.create_command_encoder()
        command_encoder.copy_buffer_to_buffer(tensor.buffer, 0, out.buffer, 0, tensor.buffer.size)
        self._device.queue.submit([command_encoder.finish()])
        return out

    # ---- elementwise ----
    def add(self, lhs, rhs):
        return self._binary("add", lhs, rhs)

    def sub(self, lhs, rhs):
        return self._binary("sub", lhs, rhs)

    def mul(self, lhs, rhs):
        return self._binary("mul", lhs, rhs)

    def div(self, lhs, rhs):
        return self._binary("div", lhs, rhs)

    def neg(self, tensor):
        return self._unary(tensor, _UNARY_EXPR["neg"])

    def add_scalar(self, tensor, scalar):
        return self._unary(tensor, _UNARY_EXPR["add_scalar"], scalar)

    def sub_scalar(self, tensor, scalar):
        return self._unary(tensor, _UNARY_EXPR["sub_scalar"], scalar)

    def mul_scalar(self, tensor, scalar):
        return self._unary(tensor, _UNARY_EXPR["mul_scalar"], scalar)

    def div_scalar(self, tensor, scalar):
        return self._unary(tensor, _UNARY_EXPR["div_scalar"], scalar)

    def powf(self, tensor, exponent):
        return self._unary(tensor, _UNARY_EXPR["powf"], exponent)

    def exp(self, tensor):
        return self._unary(tensor, _UNARY_EXPR["exp"])

    def log(self, tensor):
        return self._unary(tensor, _UNARY_EXPR["log"])

    def tanh(self, tensor):
        return self._unary(tensor, _UNARY_EXPR["tanh"])

    def relu(self, tensor):
        return self._unary(tensor, _UNARY_EXPR["relu"])

    # ---- comparison / masking ----
    def equal(self, lhs, rhs):
        return self._binary("equal", lhs, rhs, out_dtype="bool", expr="select(0u, 1u, x == y)")

    def greater_elem(self, tensor, scalar):
        return self._unary(tensor, _COMPARE_EXPR["greater_elem"], scalar, out_dtype="bool")

    def lower_equal_elem(self, tensor, scalar):
        return self._unary(tensor, _COMPARE_EXPR["lower_equal_elem"], scalar, out_dtype="bool")

    def mask_fill(self, tensor, mask, value):
        if broadcast_shape(tensor.shape, mask.shape) != tensor.shape:
            raise ShapeMismatchError(f"mask_fill: mask {mask.shape} does not fit {tensor.shape}")
        mask = self.expand(mask, tensor.shape)
        out = WgpuTensor.empty(tensor.shape)
        uniform = _uniform(self._device, "4f", float(value), 0.0, 0.0, 0.0)
        return self._run_1d(WGSL_MASK_FILL, [tensor, mask], out, uniform)

    # ---- matrix ----
    def matmul(self, lhs, rhs):
        if lhs.ndim < 2 or rhs.ndim < 2:
            raise ShapeMismatchError(f"matmul requires rank >= 2, got {lhs.shape} @ {rhs.shape}")
        m, k = lhs.shape[-2:]
        k2, n = rhs.shape[-2:]
        if k != k2:
            raise ShapeMismatchError(f"matmul: inner dims differ, {lhs.shape} @ {rhs.shape}")
        batch = broadcast_shape(lhs.shape[:-2], rhs.shape[:-2])
        lhs = self.expand(lhs, batch + (m, k))
        rhs = self.expand(rhs, batch + (k, n))
        batches = _prod(batch)
        out = WgpuTensor.empty(batch + (m, n))
        if out.numel() == 0:
            return out
        if batches > _MAX_GROUPS:
            raise BackendError(f"wgpu matmul: {batches} batches exceeds {_MAX_GROUPS}")
        uniform = _uniform(self._device, "4I", m, n, k, batches)
        _dispatch_shader(
            self._device,
            WGSL_MATMUL,
            [(lhs.buffer, "read"), (rhs.buffer, "read"), (out.buffer, "read_write"), (uniform, "uniform")],
            ((n + 15) // 16, (m + 15) // 16, batches),
        )
        return out

    # ---- shape ----
    def reshape(self, tensor, shape):
        shape = tuple(shape)
        if -1 in shape:
            known = _prod(d for d in shape if d != -1)
            shape = tuple(tensor.numel() // known if d == -1 and known else d for d in shape)
        if _prod(shape) != tensor.numel():
            raise ShapeMismatchError(f"Cannot reshape {tensor.shape} to {shape}")
        return tensor.view(shape)

    def swap_dims(self, tensor, dim1, dim2):
        dim1 = normalize_dim(dim1, tensor.ndim)
        dim2 = normalize_dim(dim2, tensor.ndim)
        if dim1 == dim2:
            return tensor
        if dim1 > dim2:
            dim1, dim2 = dim2, dim1
        shape = tensor.shape
        a, m = _prod(shape[:dim1]), shape[dim1]
        b, n = _prod(shape[dim1 + 1:dim2]), shape[dim2]
        c = _prod(shape[dim2 + 1:])
        out_shape = list(shape)
        out_shape[dim1], out_shape[dim2] = n, m
        out = WgpuTensor.empty(out_shape)
        uniform = _uniform(self._device, "8I", a, m, b, n, c, 0, 0, 0)
        return self._run_1d(WGSL_SWAP_DIMS, [tensor], out, uniform)

    def expand(self, tensor, shape):
        shape = tuple(shape)
        if tensor.shape == shape:
            return tensor
        if broadcast_shape(tensor.shape, shape) != shape:
            raise ShapeMismatchError(f"Cannot expand {tensor.shape} to {shape}")
        out = tensor.view((1,) * (len(shape) - tensor.ndim) + tensor.shape)
        for axis, (src, dst) in enumerate(zip(out.shape, shape)):
            if src != dst:
                out = self._repeat_axis(out, axis, dst)
        return out

    def slice(self, tensor, ranges: Ranges):
        slice_shape(tensor.shape, ranges)
        return WgpuTensor.from_numpy(self._host(tensor)[as_index(ranges)], tensor.dtype)

    def slice_assign(self, tensor, ranges: Ranges, value):
        target = slice_shape(tensor.shape, ranges)
        if value.shape != target:
            raise ShapeMismatchError(f"slice_assign: value shape {value.shape} != slice shape {target}")
        arr = self._host(tensor)
        arr[as_index(ranges)] = self._host(value)
        return WgpuTensor.from_numpy(arr, tensor.dtype)

    def cat(self, tensors: Sequence[WgpuTensor], dim: int):
        if not tensors:
            raise ValueError("cat: empty tensor list")
        dim = normalize_dim(dim, tensors[0].ndim)
        try:
            arr = np.concatenate([self._host(t) for t in tensors], axis=dim)
        except ValueError as exc:
            raise ShapeMismatchError(f"cat: {exc}") from None
        return WgpuTensor.from_numpy(arr, tensors[0].dtype)

    # ---- reductions ----
    def _reduce(self, tensor, outer, n, inner, out_shape):
        out = WgpuTensor.empty(out_shape)
        uniform = _uniform(self._device, "4I", outer, n, inner, 0)
        return self._run_1d(WGSL_REDUCE_AXIS, [tensor], out, uniform)

    def sum(self, tensor):
        return self._reduce(tensor, 1, tensor.numel(), 1, (1,))

    def sum_dim(self, tensor, dim):
        dim = normalize_dim(dim, tensor.ndim)
        shape = tensor.shape
        out_shape = shape[:dim] + (1,) + shape[dim + 1:]
        return self._reduce(tensor, _prod(shape[:dim]), shape[dim], _prod(shape[dim + 1:]), out_shape)

    def mean(self, tensor):
        return self.div_scalar(self.sum(tensor), float(tensor.numel()))

    def mean_dim(self, tensor, dim):
        dim = normalize_dim(dim, tensor.ndim)
        return self.div_scalar(self.sum_dim(tensor, dim), float(tensor.shape[dim]))
