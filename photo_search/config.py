import os
from pathlib import Path

CACHE_DIR = Path(
    os.environ.get("PHOTO_SEARCH_CACHE_DIR", Path.home() / ".cache" / "photo-search")
).resolve()

STORE_DB = CACHE_DIR / "embeddings.db"
CONFIG_FILE = CACHE_DIR / "config.json"
MODELS_DIR = Path(os.environ.get("PHOTO_SEARCH_MODELS_DIR", CACHE_DIR / "models")).resolve()

SUPPORTED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".heif", ".heic"}

# -- tokenizer --

BPE_FILENAME = "bpe_simple_vocab_16e6.txt.gz"
BPE_FILE = Path(os.environ.get("PHOTO_SEARCH_BPE_FILE", MODELS_DIR / BPE_FILENAME))

CONTEXT_LENGTH = 77
VOCAB_SIZE = 49152
BASE_VOCAB_SIZE = 256
SOT_TOKEN = "<|startoftext|>"
EOT_TOKEN = "<|endoftext|>"
END_OF_WORD = "</w>"

# Long queries keep <|endoftext|> as the last id after truncation.
# False reproduces plain truncation, which can drop it.
TRUNCATE_KEEPS_EOT = True

# -- embedder --

CLIP_MODEL = "ViT-B-32"
CLIP_PRETRAINED = "openai"
EMBEDDING_DIM = 512
TEXT_MODEL_FILE = "clip-text.onnx"
IMAGE_MODEL_FILE = "clip-image.onnx"
MODEL_META_FILE = "clip.json"

IMAGE_SIZE = 224
IMAGE_MEAN = (0.48145466, 0.4578275, 0.40821073)
IMAGE_STD = (0.26862954, 0.26130258, 0.27577711)

# -- search relevance --

DEFAULT_LIMIT = 20
DEFAULT_THRESHOLD = 0.2

# -- service daemon --

SERVICE_PORT = int(os.environ.get("PHOTO_SEARCH_PORT", "7830"))
SERVICE_HOST = "127.0.0.1"
SERVICE_PID_FILE = Path("/tmp/photo-search/service.pid")
SERVICE_STARTUP_TIMEOUT = 60  # seconds to wait for health check
NICE_VALUE = 15
