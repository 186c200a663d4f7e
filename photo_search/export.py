"""Export CLIP text and image encoders to ONNX for the search service.

The full PyTorch model is only needed once. Afterwards the service loads
the two ONNX graphs plus the BPE merges file from MODELS_DIR.

    uv run python export.py
"""

import json
import logging
import shutil
from pathlib import Path

from config import (
    BPE_FILENAME,
    CLIP_MODEL,
    CLIP_PRETRAINED,
    CONTEXT_LENGTH,
    IMAGE_MODEL_FILE,
    IMAGE_SIZE,
    MODEL_META_FILE,
    MODELS_DIR,
    TEXT_MODEL_FILE,
)

logger = logging.getLogger(__name__)


def export_clip(
    models_dir: Path = MODELS_DIR,
    model_name: str = CLIP_MODEL,
    pretrained: str = CLIP_PRETRAINED,
) -> Path | None:
    """Export both CLIP towers and copy the merges file into models_dir.

    Returns models_dir on success, or None on failure.
    """
    import open_clip
    import torch

    models_dir.mkdir(parents=True, exist_ok=True)
    text_path = models_dir / TEXT_MODEL_FILE
    image_path = models_dir / IMAGE_MODEL_FILE
    meta_path = models_dir / MODEL_META_FILE

    # meta_path is the commit marker -- if it exists, export is complete
    if meta_path.exists() and text_path.exists() and image_path.exists():
        logger.info("ONNX encoders already exported in %s", models_dir)
        return models_dir

    logger.info("Exporting %s (%s) to ONNX", model_name, pretrained)

    try:
        model, _, _ = open_clip.create_model_and_transforms(model_name, pretrained=pretrained)
        model.eval()

        class _Text(torch.nn.Module):
            def __init__(self, clip_model):
                super().__init__()
                self.m = clip_model

            def forward(self, input_ids):
                return self.m.encode_text(input_ids)

        class _Image(torch.nn.Module):
            def __init__(self, clip_model):
                super().__init__()
                self.m = clip_model

            def forward(self, pixel_values):
                return self.m.encode_image(pixel_values)

        dummy_tokens = torch.zeros((1, CONTEXT_LENGTH), dtype=torch.int64)
        dummy_pixels = torch.zeros((1, 3, IMAGE_SIZE, IMAGE_SIZE), dtype=torch.float32)

        with torch.no_grad():
            torch.onnx.export(
                _Text(model).eval(), (dummy_tokens,), str(text_path),
                input_names=["input_ids"],
                output_names=["text_features"],
                dynamic_axes={"input_ids": {0: "batch"}, "text_features": {0: "batch"}},
                opset_version=17,
            )
            torch.onnx.export(
                _Image(model).eval(), (dummy_pixels,), str(image_path),
                input_names=["pixel_values"],
                output_names=["image_features"],
                dynamic_axes={"pixel_values": {0: "batch"}, "image_features": {0: "batch"}},
                opset_version=17,
            )
            embedding_dim = int(model.encode_text(dummy_tokens).shape[-1])

        shutil.copyfile(open_clip.tokenizer.default_bpe(), models_dir / BPE_FILENAME)

        # Write metadata last as completion marker
        meta_path.write_text(json.dumps({
            "name": f"{model_name}-{pretrained}".lower(),
            "model": model_name,
            "pretrained": pretrained,
            "embedding_dim": embedding_dim,
        }))

        total_size = sum(f.stat().st_size for f in models_dir.iterdir() if f.is_file())
        logger.info("Exported ONNX encoders to %s (%.1f MB)", models_dir, total_size / 1e6)
        return models_dir

    except Exception:
        logger.warning("ONNX export failed for %s", model_name, exc_info=True)
        for p in models_dir.glob("clip-*"):
            p.unlink(missing_ok=True)
        return None


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    if export_clip() is None:
        raise SystemExit(1)
