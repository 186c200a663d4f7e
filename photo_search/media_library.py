"""Media sources: enumerate photo ids and decode their pixels."""

import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path

from PIL import Image, ImageOps

from config import SUPPORTED_EXTENSIONS

logger = logging.getLogger(__name__)

_heif_registered = False


class MediaLibraryError(RuntimeError):
    """The media source as a whole cannot be read."""


def register_heif() -> None:
    """Register HEIF/HEIC opener with Pillow (idempotent)."""
    global _heif_registered
    if _heif_registered:
        return
    try:
        from pillow_heif import register_heif_opener

        register_heif_opener()
        _heif_registered = True
        logger.info("HEIF support registered")
    except ImportError:
        logger.warning("pillow-heif not installed; HEIF/HEIC files will fail to decode")


class MediaLibrary(ABC):
    """A collection of images addressed by stable, opaque item ids."""

    @abstractmethod
    def list_item_ids(self) -> list[str]:
        """All current item ids, newest first."""

    @abstractmethod
    def load_pixels(self, item_id: str) -> Image.Image:
        """Decode an item into an RGB image. Raises on decode failure."""


class FolderLibrary(MediaLibrary):
    """Image files under a set of configured folders. Item id = resolved path.

    The folder list is persisted to config_path so it survives restarts.
    """

    def __init__(self, config_path: Path):
        self._config_path = config_path
        self._folders: list[str] = []
        self._load()

    def _load(self) -> None:
        if not self._config_path.exists():
            return
        try:
            data = json.loads(self._config_path.read_text())
            self._folders = list(data.get("folders", []))
        except (json.JSONDecodeError, ValueError, AttributeError):
            logger.warning("Corrupt %s, starting with no folders", self._config_path.name)

    def _save(self) -> None:
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._config_path.with_suffix(self._config_path.suffix + ".tmp")
        tmp.write_text(json.dumps({"folders": self._folders}, indent=2))
        tmp.replace(self._config_path)

    # -- folder management --

    def add_folder(self, path: str) -> str:
        resolved = str(Path(path).resolve())
        if not Path(resolved).is_dir():
            return f"Not a directory: {resolved}"
        if resolved in self._folders:
            return f"Already configured: {resolved}"
        self._folders.append(resolved)
        self._save()
        return f"Added folder: {resolved}"

    def remove_folder(self, path: str) -> str:
        resolved = str(Path(path).resolve())
        if resolved not in self._folders:
            return f"Not configured: {resolved}"
        self._folders.remove(resolved)
        self._save()
        return f"Removed folder: {resolved}"

    def list_folders(self) -> list[str]:
        return list(self._folders)

    # -- MediaLibrary --

    def list_item_ids(self) -> list[str]:
        """Scan configured folders for image files, newest first.

        Folders that are not accessible (unmounted drives) are skipped.
        Raises MediaLibraryError if folders are configured but none can be read.
        """
        found: list[tuple[float, str]] = []
        accessible = 0

        for folder in self._folders:
            folder_path = Path(folder)
            if not folder_path.is_dir():
                logger.warning("Folder not accessible (skipping): %s", folder)
                continue
            accessible += 1
            for dirpath, _dirnames, filenames in os.walk(folder_path):
                for fname in filenames:
                    p = Path(dirpath) / fname
                    if p.suffix.lower() not in SUPPORTED_EXTENSIONS:
                        continue
                    try:
                        mtime = p.stat().st_mtime
                    except OSError:
                        continue
                    found.append((mtime, str(p.resolve())))

        if self._folders and not accessible:
            raise MediaLibraryError("None of the configured folders is accessible")

        found.sort(key=lambda x: x[0], reverse=True)
        return list(dict.fromkeys(path for _mtime, path in found))

    def load_pixels(self, item_id: str) -> Image.Image:
        """Open an image fully into memory as RGB, honouring EXIF orientation."""
        if Path(item_id).suffix.lower() in (".heif", ".heic"):
            register_heif()
        with Image.open(item_id) as img:
            img = ImageOps.exif_transpose(img)
            if img.mode != "RGB":
                img = img.convert("RGB")
            img.load()
        return img
