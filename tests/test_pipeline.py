"""Tests for Sequential pipelines, built in code and loaded from model files."""

import io

import numpy as np
import numpy.testing as npt
import pytest

from gpu_runtime.errors import CompilationError, InvalidShapeError, TruncatedFileError
from gpu_runtime.tensor import Tensor
from gpu_stages.identity import Identity
from gpu_stages.linear import Linear
from gpu_stages.pipeline import Pipeline, Sequential
from gpu_stages.registry import load_model, load_stage
from gpu_stages.reshape import INFER, Reshape
from gpu_stages.spatial_divisive_normalization import SpatialDivisiveNormalization
from gpu_stages.spatial_up_sampling_nearest import SpatialUpSamplingNearest
from tests.conftest import identity_record, linear_record, reshape_record, sequential_record


def _linear(context, weights, biases):
    stage = Linear(weights.shape[1], weights.shape[0], context)
    stage.set_weights(weights)
    stage.set_biases(biases)
    return stage


class TestSequential:

    def test_reshape_linear_identity(self, context, rng):
        weights = rng.standard_normal((4, 6)).astype(np.float32)
        biases = rng.standard_normal(4).astype(np.float32)
        model = Sequential([
            Reshape((INFER,), context),
            _linear(context, weights, biases),
            Identity(context),
        ], context)
        x = rng.standard_normal((2, 3)).astype(np.float32)

        out = model.forward(Tensor.from_numpy(x, context))

        assert out is model.output
        assert out is model[1].output
        npt.assert_allclose(out.get_data(), weights @ x.ravel() + biases, rtol=1e-5, atol=1e-5)

    def test_spatial_then_dense(self, context, rng):
        weights = rng.standard_normal((3, 16)).astype(np.float32)
        biases = np.zeros(3, np.float32)
        model = Pipeline([
            SpatialUpSamplingNearest(2, context),
            Reshape((16,), context),
            _linear(context, weights, biases),
        ], context)
        x = rng.standard_normal((1, 2, 2)).astype(np.float32)

        out = model.forward(Tensor.from_numpy(x, context))

        upsampled = np.kron(x, np.ones((1, 2, 2), np.float32)).ravel()
        npt.assert_allclose(out.get_data(), weights @ upsampled, rtol=1e-5, atol=1e-5)

    def test_empty_pipeline_passes_input(self, context):
        x = Tensor((3,), context)
        assert Sequential(context=context).forward(x) is x

    def test_container_protocol(self, context):
        model = Sequential(context=context).add(Identity(context)).add(Reshape((2, 2), context))
        assert len(model) == 2
        assert isinstance(model[0], Identity)
        assert [stage.name for stage in model] == ["Identity", "Reshape"]

    def test_add_rejects_non_stage(self, context):
        with pytest.raises(TypeError):
            Sequential(context=context).add("Linear")

    def test_fails_fast(self, context):
        model = Sequential([Linear(4, 2, context), Linear(3, 1, context)], context)
        with pytest.raises(InvalidShapeError):
            model.forward(Tensor((4,), context))
        assert model.output is None
        assert model[1].output is None
        # Only the first stage's two launches ran.
        assert context.dispatcher.launch_count == 2

    def test_compilation_error_stops_pipeline(self, make_context, tmp_path):
        (tmp_path / "spatial_divisive_normalization.cu").write_text(
            'extern "C" __global__ void SpatialDivisiveNormalizationOther(float* x) {}'
        )
        context = make_context(kernel_root=str(tmp_path))
        model = Sequential([
            Identity(context),
            SpatialDivisiveNormalization(np.ones((3, 3), np.float32), context=context),
            Reshape((INFER,), context),
        ], context)

        with pytest.raises(CompilationError, match="not found") as exc_info:
            model.forward(Tensor((1, 3, 3), context))

        assert exc_info.value.entry == "SpatialDivisiveNormalization2D"
        assert model.output is None
        assert model[0].output is not None
        assert model[2].output is None
        assert context.dispatcher.launch_count == 0

    def test_repeated_forward_keeps_buffers(self, context, rng):
        model = Sequential([Reshape((INFER,), context), Linear(4, 2, context)], context)
        first = model.forward(Tensor.from_numpy(rng.standard_normal((2, 2)), context))
        second = model.forward(Tensor.from_numpy(rng.standard_normal((2, 2)), context))
        assert second is first


class TestLoadedModel:

    def test_load_nested(self, context, rng):
        weights = rng.standard_normal((2, 4)).astype(np.float32)
        biases = rng.standard_normal(2).astype(np.float32)
        record = sequential_record(
            reshape_record([INFER]),
            sequential_record(linear_record(weights, biases), identity_record()),
        )
        model = load_stage(io.BytesIO(record), context)

        assert isinstance(model, Sequential)
        assert len(model) == 2
        assert isinstance(model[1], Sequential)
        x = rng.standard_normal((2, 2)).astype(np.float32)
        out = model.forward(Tensor.from_numpy(x, context))
        npt.assert_allclose(out.get_data(), weights @ x.ravel() + biases, rtol=1e-5, atol=1e-5)

    def test_load_model_file(self, context, tmp_path):
        path = tmp_path / "model.bin"
        path.write_bytes(sequential_record(identity_record(), reshape_record([2, 2])))
        model = load_model(path, context)
        assert [stage.name for stage in model] == ["Identity", "Reshape"]

    def test_truncated_nested_record(self, context, tmp_path):
        record = sequential_record(identity_record(), linear_record(np.ones((2, 2)), np.ones(2)))
        path = tmp_path / "model.bin"
        path.write_bytes(record[:-4])
        with pytest.raises(TruncatedFileError):
            load_model(path, context)
