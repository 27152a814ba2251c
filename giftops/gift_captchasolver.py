import asyncio
import io
import json
import logging
import os

import numpy as np
import onnxruntime as ort
from PIL import Image

from .config import CAPTCHA_IDLE_TIMEOUT, CAPTCHA_METADATA_PATH, CAPTCHA_MODEL_PATH
from .errors import CaptchaModelError

logger = logging.getLogger('gift_ops')


class GiftCaptchaSolver:
    """ONNX captcha reader, loaded on first use and unloaded after an idle window.

    The metadata document next to the model supplies ``input_shape`` ([C, H, W]),
    ``normalization`` (``mean``/``std`` lists), ``idx_to_char`` and
    ``output_positions``; the model takes an ``image`` tensor and produces one
    ``position_{i}`` probability vector per character.
    """

    def __init__(self, model_path=CAPTCHA_MODEL_PATH, metadata_path=CAPTCHA_METADATA_PATH,
                 idle_timeout=CAPTCHA_IDLE_TIMEOUT):
        self.model_path = model_path
        self.metadata_path = metadata_path
        self.idle_timeout = idle_timeout
        self.session = None
        self.metadata = None
        self._idle_handle = None
        self._load_lock = asyncio.Lock()

    @property
    def is_initialized(self):
        return self.session is not None and self.metadata is not None

    def _load_model(self):
        if not os.path.exists(self.model_path) or not os.path.exists(self.metadata_path):
            raise CaptchaModelError(
                f"Captcha model or metadata not found ({self.model_path}, {self.metadata_path})"
            )
        session = ort.InferenceSession(self.model_path, providers=["CPUExecutionProvider"])
        with open(self.metadata_path, 'r', encoding='utf-8') as f:
            metadata = json.load(f)
        return session, metadata

    async def ensure_ready(self):
        self._cancel_idle_timer()
        if not self.is_initialized:
            async with self._load_lock:
                if not self.is_initialized:
                    try:
                        self.session, self.metadata = await asyncio.to_thread(self._load_model)
                    except Exception:
                        self.session = None
                        self.metadata = None
                        logger.exception("GiftOps: Failed to load ONNX captcha model")
                        raise
                    logger.info("GiftOps: ONNX captcha solver loaded")
        self._idle_handle = asyncio.get_running_loop().call_later(self.idle_timeout, self.unload)

    def _cancel_idle_timer(self):
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None

    def unload(self):
        if self.session is not None or self.metadata is not None:
            self.session = None
            self.metadata = None
            logger.info("GiftOps: ONNX captcha solver unloaded")
        self._cancel_idle_timer()

    def preprocess(self, image_bytes, metadata=None):
        """Resize to the model input, convert to grayscale and normalize to a float32 NCHW tensor."""
        metadata = metadata or self.metadata
        channels, height, width = metadata["input_shape"]
        mean = metadata["normalization"]["mean"][0]
        std = metadata["normalization"]["std"][0]

        image = Image.open(io.BytesIO(image_bytes)).convert('L').resize((width, height), Image.BILINEAR)
        pixels = np.asarray(image, dtype=np.float32) / 255.0
        pixels = (pixels - mean) / std
        tensor = pixels.reshape(1, 1, height, width)
        if channels > 1:
            tensor = np.repeat(tensor, channels, axis=1)
        return tensor.astype(np.float32)

    def _infer(self, image_bytes):
        session, metadata = self.session, self.metadata
        if session is None or metadata is None:
            raise CaptchaModelError("Captcha model was unloaded during inference")

        tensor = self.preprocess(image_bytes, metadata)
        output_names = [output.name for output in session.get_outputs()]
        outputs = dict(zip(output_names, session.run(None, {"image": tensor})))

        predicted_text = ''
        confidences = []
        for pos in range(int(metadata["output_positions"])):
            probabilities = np.asarray(outputs[f"position_{pos}"]).reshape(-1)
            max_idx = int(np.argmax(probabilities))
            predicted_text += metadata["idx_to_char"][str(max_idx)]
            confidences.append(float(probabilities[max_idx]))

        confidence = sum(confidences) / len(confidences) if confidences else 0.0
        return {"text": predicted_text, "confidence": confidence}

    async def solve(self, image_bytes):
        """Return {'text', 'confidence'} for a captcha image; raises on load or inference failure."""
        await self.ensure_ready()
        return await asyncio.to_thread(self._infer, image_bytes)


_solver = None


def get_captcha_solver():
    global _solver
    if _solver is None:
        _solver = GiftCaptchaSolver()
    return _solver
