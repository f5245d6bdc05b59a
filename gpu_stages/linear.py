"""Linear: dense layer, ``output = W . input + bias``."""

from __future__ import annotations

from typing import BinaryIO

import numpy as np

from gpu_runtime.context import DeviceContext
from gpu_runtime.errors import InvalidParameterError, InvalidShapeError, ModelFormatError
from gpu_runtime.kernel_cache import KernelSource
from gpu_runtime.tensor import Tensor
from gpu_runtime.work_partition import matvec_partition
from gpu_stages.registry import register_stage
from gpu_stages.serialization import read_float32_array, read_int32
from gpu_stages.stage import Stage, StageType

# A is the transposed weight matrix: M rows (outputs) by N cols (inputs),
# column major, so A[i + M * k] is W[i, k].
LINEAR_KERNELS = KernelSource.inline(r"""
extern "C" {

__global__ void MatVecMultSimple(const float* A, const float* X, float* Y,
                                 const int M, const int N) {
    const int i = blockIdx.x * blockDim.x + threadIdx.x;
    if (i >= M) return;
    float sum = 0.0f;
    for (int k = 0; k < N; k++) {
        sum += A[i + M * k] * X[k];
    }
    Y[i] = sum;
}

// Rows on x, column slices on y. Each block reduces its blockDim.y partial
// sums per row in dynamic shared memory (blockDim.x * blockDim.y floats).
__global__ void MatVecMultThreads(const float* A, const float* X, float* Y,
                                  const int M, const int N) {
    extern __shared__ float work[];
    const int row = blockIdx.x * blockDim.x + threadIdx.x;
    const int rows = blockDim.x;
    const int cols = blockDim.y;
    const int ii = threadIdx.x;
    const int jj = threadIdx.y;

    float sum = 0.0f;
    for (int k = jj; k < N; k += cols) {
        sum += A[row + M * k] * X[k];
    }
    work[ii + rows * jj] = sum;
    __syncthreads();

    int width = 1;
    while (width < cols) width <<= 1;
    for (int stride = width >> 1; stride > 0; stride >>= 1) {
        if (jj < stride && jj + stride < cols) {
            work[ii + rows * jj] += work[ii + rows * (jj + stride)];
        }
        __syncthreads();
    }
    if (jj == 0) {
        Y[row] = work[ii];
    }
}

__global__ void Accum(float* output, const float* biases, const int n) {
    const int i = blockIdx.x * blockDim.x + threadIdx.x;
    if (i >= n) return;
    output[i] += biases[i];
}

}
""")


@register_stage
class Linear(Stage):
    """Fully connected layer over a 1-D input of ``n_inputs`` elements.

    Weights are kept transposed on the device, ``(n_inputs, n_outputs)`` in
    C order, so consecutive work-items read consecutive addresses.
    """

    stage_type = StageType.LINEAR

    def __init__(self, n_inputs: int, n_outputs: int, context: DeviceContext | None = None):
        for label, value in (("n_inputs", n_inputs), ("n_outputs", n_outputs)):
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value < 1:
                raise InvalidParameterError(f"{label} must be a positive integer", {label: value})
        super().__init__(context)
        self.n_inputs = int(n_inputs)
        self.n_outputs = int(n_outputs)
        self.weights = Tensor((self.n_inputs, self.n_outputs), self.context)
        self.biases = Tensor((self.n_outputs,), self.context)

    def set_weights(self, weights: np.ndarray) -> None:
        """Load an ``(n_outputs, n_inputs)`` row-major weight matrix."""
        weights = np.asarray(weights, dtype=np.float32)
        if weights.size != self.n_outputs * self.n_inputs:
            raise InvalidShapeError(
                "Weight matrix size does not match the layer",
                {"expected": (self.n_outputs, self.n_inputs), "got": weights.shape},
            )
        self.weights.set_data(weights.reshape(self.n_outputs, self.n_inputs).T)

    def set_biases(self, biases: np.ndarray) -> None:
        biases = np.asarray(biases, dtype=np.float32)
        if biases.size != self.n_outputs:
            raise InvalidShapeError(
                "Bias vector size does not match the layer",
                {"expected": self.n_outputs, "got": biases.shape},
            )
        self.biases.set_data(biases)

    def init(self, input: Tensor) -> None:
        if input.ndim != 1 or input.shape[0] != self.n_inputs:
            raise InvalidShapeError(
                "Linear expects a 1-D input of n_inputs elements",
                {"n_inputs": self.n_inputs, "got": input.shape},
            )
        self.output = self._reallocate(self.output, (self.n_outputs,))

    def _forward(self, input: Tensor) -> None:
        d = self.context.dispatcher
        if self.context.config.linear_strategy == "simple":
            d.use(LINEAR_KERNELS, "MatVecMultSimple")
            d.bind_argument(0, self.weights)
            d.bind_argument(1, input)
            d.bind_argument(2, self.output)
            d.bind_argument(3, self.n_outputs)
            d.bind_argument(4, self.n_inputs)
            d.launch(1, (self.n_outputs,))
        else:
            d.use(LINEAR_KERNELS, "MatVecMultThreads")
            global_size, local_size = matvec_partition(
                self.n_outputs,
                d.backend.limits,
                d.max_workgroup_size_for_kernel(),
                self.context.config.linear_parallelism,
            )
            d.bind_argument(0, self.weights)
            d.bind_argument(1, input)
            d.bind_argument(2, self.output)
            # One float of scratch per work-item in the group.
            d.bind_argument(3, nbytes=4 * local_size[0] * local_size[1])
            d.bind_argument(4, self.n_outputs)
            d.bind_argument(5, self.n_inputs)
            d.launch(2, global_size, local_size)

        d.use(LINEAR_KERNELS, "Accum")
        d.bind_argument(0, self.output)
        d.bind_argument(1, self.biases)
        d.bind_argument(2, self.n_outputs)
        d.launch(1, (self.n_outputs,))

    @classmethod
    def load_from_file(cls, stream: BinaryIO, context: DeviceContext | None = None) -> Linear:
        n_outputs = read_int32(stream)
        n_inputs = read_int32(stream)
        if n_outputs < 1 or n_inputs < 1:
            raise ModelFormatError(
                "Linear record has non-positive sizes", {"n_outputs": n_outputs, "n_inputs": n_inputs}
            )
        weights = read_float32_array(stream, n_outputs * n_inputs)
        biases = read_float32_array(stream, n_outputs)
        stage = cls(n_inputs, n_outputs, context)
        stage.set_weights(weights)
        stage.set_biases(biases)
        return stage

    def __repr__(self) -> str:
        return f"Linear({self.n_inputs} -> {self.n_outputs})"
