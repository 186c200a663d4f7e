"""CLIP embedders: token ids or pixels -> embedding vectors.

Inference runs through ONNX Runtime sessions over the text and image towers
exported by export.py. Both outputs are L2-normalised float32 vectors.
"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Sequence

import numpy as np
from PIL import Image

from config import (
    EMBEDDING_DIM,
    IMAGE_MEAN,
    IMAGE_MODEL_FILE,
    IMAGE_SIZE,
    IMAGE_STD,
    MODEL_META_FILE,
    TEXT_MODEL_FILE,
)

logger = logging.getLogger(__name__)


def _normalize(vec: np.ndarray) -> np.ndarray:
    vec = vec.astype(np.float32)
    norm = np.linalg.norm(vec)
    if norm > 0:
        vec /= norm
    return vec


def preprocess_image(image: Image.Image, size: int = IMAGE_SIZE) -> np.ndarray:
    """Resize to size x size and normalise with CLIP statistics. Returns (1, 3, H, W)."""
    if image.mode != "RGB":
        image = image.convert("RGB")
    resized = image.resize((size, size), Image.BILINEAR)
    pixels = np.asarray(resized, dtype=np.float32) / 255.0
    pixels = (pixels - np.array(IMAGE_MEAN, dtype=np.float32)) / np.array(IMAGE_STD, dtype=np.float32)
    return pixels.transpose(2, 0, 1)[np.newaxis, ...].astype(np.float32)


class Embedder(ABC):
    """Maps text tokens and images into a shared embedding space."""

    name: str
    embedding_dim: int

    @abstractmethod
    def encode_text(self, token_ids: Sequence[int]) -> np.ndarray:
        """Encode one token sequence. Returns (D,) float32."""

    @abstractmethod
    def encode_image(self, image: Image.Image) -> np.ndarray:
        """Encode one image. Returns (D,) float32."""

    @property
    def loaded(self) -> bool:
        return False


class OnnxClipEmbedder(Embedder):
    """Runs exported CLIP text and image encoders via ONNX Runtime."""

    def __init__(self, text_path: Path, image_path: Path, name: str = "clip", embedding_dim: int = EMBEDDING_DIM):
        self.name = name
        self.embedding_dim = embedding_dim
        self.text_path = text_path
        self.image_path = image_path
        self._text_session = None
        self._image_session = None
        self._token_dtype = np.int64

    @property
    def loaded(self) -> bool:
        return self._text_session is not None and self._image_session is not None

    def load(self) -> None:
        import onnxruntime as ort

        logger.info("Loading ONNX encoders: %s", self.name)
        providers = ["CPUExecutionProvider"]
        self._text_session = ort.InferenceSession(str(self.text_path), providers=providers)
        self._image_session = ort.InferenceSession(str(self.image_path), providers=providers)
        # Some exports take int32 token ids, others int64
        if self._text_session.get_inputs()[0].type == "tensor(int32)":
            self._token_dtype = np.int32
        logger.info("Loaded ONNX encoders: %s", self.name)

    def _ensure_loaded(self) -> None:
        if not self.loaded:
            self.load()

    def encode_text(self, token_ids: Sequence[int]) -> np.ndarray:
        self._ensure_loaded()
        tokens = np.asarray([list(token_ids)], dtype=self._token_dtype)
        input_name = self._text_session.get_inputs()[0].name
        outputs = self._text_session.run(None, {input_name: tokens})
        return _normalize(outputs[0][0])

    def encode_image(self, image: Image.Image) -> np.ndarray:
        self._ensure_loaded()
        pixels = preprocess_image(image)
        input_name = self._image_session.get_inputs()[0].name
        outputs = self._image_session.run(None, {input_name: pixels})
        return _normalize(outputs[0][0])


def load_embedder(models_dir: Path) -> OnnxClipEmbedder | None:
    """Return an embedder for the exported models in models_dir, if present.

    The metadata file is written last by the exporter, so its presence marks
    a complete export.
    """
    text_path = models_dir / TEXT_MODEL_FILE
    image_path = models_dir / IMAGE_MODEL_FILE
    meta_path = models_dir / MODEL_META_FILE

    if not (text_path.exists() and image_path.exists() and meta_path.exists()):
        return None

    try:
        meta = json.loads(meta_path.read_text())
        return OnnxClipEmbedder(
            text_path,
            image_path,
            name=meta["name"],
            embedding_dim=int(meta["embedding_dim"]),
        )
    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
        logger.warning("Could not read model metadata in %s", models_dir)
        return None
