"""
Asset Loading.

Model files, the vocabulary and the optional JSON configs are read through
an asset source so callers can serve them from disk, a bundle or memory.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)


class AssetSource:
    """Reads named assets as text or bytes."""

    def load_text(self, path: str) -> str:
        raise NotImplementedError

    def load_bytes(self, path: str) -> bytes:
        raise NotImplementedError


class FileAssetSource(AssetSource):
    """Asset source backed by the local filesystem.

    Args:
        root: Directory relative asset paths are resolved against.
              Absolute paths are used as-is.
    """

    def __init__(self, root: Optional[Union[str, Path]] = None):
        self.root = Path(root) if root is not None else None

    def _resolve(self, path: str) -> Path:
        if self.root is None:
            return Path(path)
        return self.root / path

    def load_text(self, path: str) -> str:
        with open(self._resolve(path), "r", encoding="utf-8") as f:
            return f.read()

    def load_bytes(self, path: str) -> bytes:
        return self._resolve(path).read_bytes()


class MemoryAssetSource(AssetSource):
    """In-memory asset source, keyed by path."""

    def __init__(self, assets: Optional[Dict[str, Union[str, bytes]]] = None):
        self.assets = dict(assets or {})

    def load_text(self, path: str) -> str:
        data = self._get(path)
        return data.decode("utf-8") if isinstance(data, bytes) else data

    def load_bytes(self, path: str) -> bytes:
        data = self._get(path)
        return data.encode("utf-8") if isinstance(data, str) else data

    def _get(self, path: str) -> Union[str, bytes]:
        try:
            return self.assets[path]
        except KeyError:
            raise FileNotFoundError(path) from None


def load_optional_json(
    source: AssetSource,
    path: Optional[str]
) -> Optional[Dict[str, Any]]:
    """Load an optional JSON object.

    Returns None if the path is unset, the asset is missing or unreadable,
    the content is not valid JSON, or the top-level value is not an object.
    """
    if not path:
        return None

    try:
        data = json.loads(source.load_text(path))
    except (OSError, UnicodeDecodeError, ValueError) as e:
        logger.debug("Optional config %s not loaded: %s", path, e)
        return None

    if not isinstance(data, dict):
        logger.debug("Optional config %s is not a JSON object, ignoring", path)
        return None

    return data
