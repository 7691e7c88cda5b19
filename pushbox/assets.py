import logging
import mimetypes
from pathlib import Path
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger("pushbox.assets")

STATIC_DIR = Path(__file__).resolve().parent / "static"
DEFAULT_MIMETYPE = "application/octet-stream"


class AssetTable:
    """Static UI files loaded into memory once at startup."""

    def __init__(self, files: Dict[str, bytes]) -> None:
        self._files = dict(files)

    @classmethod
    def from_directory(cls, directory: Path = STATIC_DIR) -> "AssetTable":
        files: Dict[str, bytes] = {}
        if directory.is_dir():
            for path in sorted(directory.rglob("*")):
                if path.is_file():
                    files[path.relative_to(directory).as_posix()] = path.read_bytes()
        logger.info("assets_loaded directory=%s count=%d", directory, len(files))
        return cls(files)

    def names(self) -> List[str]:
        return sorted(self._files)

    def get(self, name: str) -> Optional[Tuple[bytes, str]]:
        data = self._files.get(name)
        if data is None:
            return None
        mimetype, _ = mimetypes.guess_type(name)
        return data, mimetype or DEFAULT_MIMETYPE
