"""Tests for the Linear stage on the host backend."""

import io

import numpy as np
import numpy.testing as npt
import pytest

from gpu_runtime.backend import DeviceLimits, LaunchGeometry
from gpu_runtime.errors import InvalidParameterError, InvalidShapeError, ModelFormatError
from gpu_runtime.tensor import Tensor
from gpu_runtime.work_partition import matvec_partition
from gpu_stages.host_kernels import mat_vec_mult_threads
from gpu_stages.linear import Linear
from gpu_stages.registry import load_stage
from tests.conftest import linear_record


def _make_linear(context, rng, n_inputs, n_outputs):
    weights = rng.standard_normal((n_outputs, n_inputs)).astype(np.float32)
    biases = rng.standard_normal(n_outputs).astype(np.float32)
    stage = Linear(n_inputs, n_outputs, context)
    stage.set_weights(weights)
    stage.set_biases(biases)
    return stage, weights, biases


class TestLinearForward:

    @pytest.mark.parametrize("strategy", ["threads", "simple"])
    @pytest.mark.parametrize("n_inputs, n_outputs", [
        (1, 1),
        (3, 2),
        (16, 16),
        (100, 97),
        (33, 128),
        (7, 1000),
    ])
    def test_matches_numpy(self, make_context, rng, strategy, n_inputs, n_outputs):
        context = make_context(linear_strategy=strategy)
        stage, weights, biases = _make_linear(context, rng, n_inputs, n_outputs)
        x = rng.standard_normal(n_inputs).astype(np.float32)

        out = stage.forward(Tensor.from_numpy(x, context))

        assert out.shape == (n_outputs,)
        npt.assert_allclose(out.get_data(), weights @ x + biases, rtol=1e-4, atol=1e-4)

    def test_single_element(self, context):
        stage = Linear(1, 1, context)
        stage.set_weights(np.array([[3.0]]))
        stage.set_biases(np.array([1.0]))
        out = stage.forward(Tensor.from_numpy(np.array([2.0]), context))
        npt.assert_allclose(out.get_data(), [7.0])

    def test_small_device(self, make_context, small_limits, rng):
        context = make_context(limits=small_limits, kernel_max_workgroup_size=32)
        stage, weights, biases = _make_linear(context, rng, 19, 60)
        x = rng.standard_normal(19).astype(np.float32)
        out = stage.forward(Tensor.from_numpy(x, context))
        npt.assert_allclose(out.get_data(), weights @ x + biases, rtol=1e-4, atol=1e-4)

    def test_narrow_dim0_device(self, make_context, rng):
        narrow = DeviceLimits(max_workgroup_size=64, max_workitem_sizes=(2, 8, 4))
        context = make_context(limits=narrow)
        stage, weights, biases = _make_linear(context, rng, 5, 60)
        x = rng.standard_normal(5).astype(np.float32)
        out = stage.forward(Tensor.from_numpy(x, context))
        npt.assert_allclose(out.get_data(), weights @ x + biases, rtol=1e-4, atol=1e-4)

    def test_single_row_work_groups(self, make_context, rng):
        # A kernel maximum equal to the slice count leaves one row per group.
        context = make_context(kernel_max_workgroup_size=16)
        _, local_size = matvec_partition(64, context.backend.limits, 16)
        assert local_size == (1, 16)
        stage, weights, biases = _make_linear(context, rng, 37, 64)
        x = rng.standard_normal(37).astype(np.float32)
        out = stage.forward(Tensor.from_numpy(x, context))
        npt.assert_allclose(out.get_data(), weights @ x + biases, rtol=1e-4, atol=1e-4)

    def test_output_reused_across_calls(self, context, rng):
        stage, weights, biases = _make_linear(context, rng, 5, 4)
        first = stage.forward(Tensor.from_numpy(np.ones(5), context))
        x = rng.standard_normal(5).astype(np.float32)
        second = stage.forward(Tensor.from_numpy(x, context))
        assert second is first
        npt.assert_allclose(second.get_data(), weights @ x + biases, rtol=1e-5, atol=1e-5)

    def test_kernels_compiled_once(self, context, rng):
        stage, _, _ = _make_linear(context, rng, 4, 4)
        x = Tensor.from_numpy(np.ones(4), context)
        stage.forward(x)
        builds = context.cache.stats()
        stage.forward(x)
        stage.forward(x)
        assert context.cache.stats() == builds
        assert builds["program_builds"] == 1
        assert builds["kernel_builds"] == 2

    def test_two_launches_per_forward(self, context, rng):
        stage, _, _ = _make_linear(context, rng, 4, 4)
        stage.forward(Tensor.from_numpy(np.ones(4), context))
        assert context.dispatcher.launch_count == 2


class TestLinearValidation:

    @pytest.mark.parametrize("n_inputs, n_outputs", [(0, 3), (3, 0), (-1, 2), (2.5, 2), (True, 2)])
    def test_bad_sizes(self, context, n_inputs, n_outputs):
        with pytest.raises(InvalidParameterError):
            Linear(n_inputs, n_outputs, context)

    def test_wrong_input_length(self, context):
        stage = Linear(4, 2, context)
        with pytest.raises(InvalidShapeError):
            stage.forward(Tensor((5,), context))

    def test_input_must_be_1d(self, context):
        stage = Linear(4, 2, context)
        with pytest.raises(InvalidShapeError):
            stage.forward(Tensor((2, 2), context))

    def test_weight_size_mismatch(self, context):
        stage = Linear(4, 2, context)
        with pytest.raises(InvalidShapeError):
            stage.set_weights(np.zeros((4, 3)))
        with pytest.raises(InvalidShapeError):
            stage.set_biases(np.zeros(3))

    def test_weights_stored_transposed(self, context):
        stage = Linear(3, 2, context)
        weights = np.arange(6, dtype=np.float32).reshape(2, 3)
        stage.set_weights(weights)
        assert stage.weights.shape == (3, 2)
        npt.assert_array_equal(stage.weights.get_data(), weights.T)


class TestLinearLoading:

    def test_load_record(self, context, rng):
        weights = rng.standard_normal((3, 5)).astype(np.float32)
        biases = rng.standard_normal(3).astype(np.float32)
        stage = load_stage(io.BytesIO(linear_record(weights, biases)), context)

        assert isinstance(stage, Linear)
        assert (stage.n_inputs, stage.n_outputs) == (5, 3)
        x = rng.standard_normal(5).astype(np.float32)
        out = stage.forward(Tensor.from_numpy(x, context))
        npt.assert_allclose(out.get_data(), weights @ x + biases, rtol=1e-5, atol=1e-5)

    def test_non_positive_sizes(self, context):
        record = linear_record(np.zeros((0, 2)), np.zeros(0))
        with pytest.raises(ModelFormatError):
            load_stage(io.BytesIO(record), context)


class TestThreadsReference:

    @pytest.mark.parametrize("local_size", [(1, 3), (2, 3), (4, 3), (8, 3), (1, 5), (4, 5), (8, 1)])
    def test_independent_of_work_group_shape(self, rng, local_size):
        m, n = 8, 11
        p = local_size[1]
        weights = rng.standard_normal((m, n)).astype(np.float32)
        a = np.ascontiguousarray(weights.T).ravel()
        x = rng.standard_normal(n).astype(np.float32)
        y = np.zeros(m, np.float32)
        geometry = LaunchGeometry(2, (m, p), local_size)

        mat_vec_mult_threads(geometry, a, x, y, np.int32(m), np.int32(n))

        npt.assert_allclose(y, weights @ x, rtol=1e-5, atol=1e-5)

    def test_row_groups_write_only_their_rows(self):
        m, n = 4, 2
        a = np.ones(m * n, np.float32)
        x = np.ones(n, np.float32)
        y = np.full(m + 2, -1.0, np.float32)
        mat_vec_mult_threads(LaunchGeometry(2, (m, 2), (2, 2)), a, x, y, np.int32(m), np.int32(n))
        npt.assert_array_equal(y, [2, 2, 2, 2, -1, -1])
