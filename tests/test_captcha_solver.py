import io
from types import SimpleNamespace

import numpy as np
import pytest
from PIL import Image

from giftops.errors import CaptchaModelError
from giftops.gift_captchasolver import GiftCaptchaSolver

METADATA = {
    "input_shape": [1, 20, 60],
    "normalization": {"mean": [0.5], "std": [0.5]},
    "idx_to_char": {"0": "A", "1": "B", "2": "7"},
    "output_positions": 3,
}


def captcha_png(size=(120, 40)):
    buffer = io.BytesIO()
    Image.new('RGB', size, color=(200, 30, 30)).save(buffer, format='PNG')
    return buffer.getvalue()


class FakeInferenceSession:
    """Returns fixed per-position probability vectors."""

    def __init__(self, picks):
        self.picks = picks
        self.inputs = []

    def get_outputs(self):
        return [SimpleNamespace(name=f"position_{i}") for i in range(len(self.picks))]

    def run(self, output_names, feeds):
        self.inputs.append(feeds["image"])
        outputs = []
        for pick, confidence in self.picks:
            probabilities = np.full((1, 3), (1.0 - confidence) / 2, dtype=np.float32)
            probabilities[0, pick] = confidence
            outputs.append(probabilities)
        return outputs


@pytest.fixture
def loaded_solver(tmp_path):
    solver = GiftCaptchaSolver(model_path=str(tmp_path / "missing.onnx"), metadata_path=str(tmp_path / "missing.json"))
    solver.session = FakeInferenceSession([(2, 0.9), (0, 0.8), (1, 0.7)])
    solver.metadata = METADATA
    yield solver
    solver.unload()


class TestPreprocess:
    def test_tensor_shape_and_range(self, loaded_solver):
        tensor = loaded_solver.preprocess(captcha_png())
        assert tensor.shape == (1, 1, 20, 60)
        assert tensor.dtype == np.float32
        assert tensor.min() >= -1.0
        assert tensor.max() <= 1.0

    def test_repeats_channels(self, loaded_solver):
        metadata = dict(METADATA, input_shape=[3, 20, 60])
        assert loaded_solver.preprocess(captcha_png(), metadata).shape == (1, 3, 20, 60)


class TestSolve:
    @pytest.mark.asyncio
    async def test_decodes_each_position(self, loaded_solver):
        result = await loaded_solver.solve(captcha_png())
        assert result["text"] == "7AB"
        assert result["confidence"] == pytest.approx(0.8)
        assert loaded_solver.session.inputs[0].shape == (1, 1, 20, 60)

    @pytest.mark.asyncio
    async def test_unload_releases_model(self, loaded_solver):
        await loaded_solver.solve(captcha_png())
        loaded_solver.unload()
        assert loaded_solver.is_initialized is False

    @pytest.mark.asyncio
    async def test_missing_model_files(self, tmp_path):
        solver = GiftCaptchaSolver(model_path=str(tmp_path / "nope.onnx"), metadata_path=str(tmp_path / "nope.json"))
        with pytest.raises(CaptchaModelError):
            await solver.solve(captcha_png())
        assert solver.is_initialized is False

    def test_infer_without_model(self):
        with pytest.raises(CaptchaModelError):
            GiftCaptchaSolver()._infer(captcha_png())
