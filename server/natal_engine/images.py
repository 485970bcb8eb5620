"""Chart wheel image files, referenced from charts by file id."""

import logging
import os
import uuid
from pathlib import Path
from typing import Optional, Union

from .models import ChartVisualization

logger = logging.getLogger(__name__)

IMAGE_FORMATS = ("svg", "png")


class ChartImageStore:
    """
    Stores chart images as `{file_id}.{format}` in one directory.

    Args:
        directory: Image directory, created if missing
    """

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, file_id: str, fmt: str) -> Path:
        if fmt not in IMAGE_FORMATS:
            raise ValueError(f"Unsupported image format '{fmt}'. Must be one of {IMAGE_FORMATS}")
        # file ids are generated here; refuse anything that could escape the directory
        if not file_id or Path(file_id).name != file_id:
            raise ValueError(f"Invalid image file id '{file_id}'")
        return self.directory / f"{file_id}.{fmt}"

    def save(self, content: Union[str, bytes], fmt: str = "svg",
             file_id: Optional[str] = None) -> ChartVisualization:
        """
        Write an image atomically.

        Args:
            content: Image data; text is stored as UTF-8
            fmt: "svg" or "png"
            file_id: Reuse an id (defaults to a new UUID)

        Returns:
            Visualization reference to attach to the chart
        """
        file_id = file_id or str(uuid.uuid4())
        path = self._path(file_id, fmt)
        data = content.encode("utf-8") if isinstance(content, str) else content

        tmp_path = path.with_name(path.name + ".tmp")
        tmp_path.write_bytes(data)
        os.replace(tmp_path, path)

        logger.info(f"Saved {fmt.upper()} chart image {file_id} ({len(data)} bytes)")
        return ChartVisualization(file_id=file_id, format=fmt)

    def load(self, file_id: str, fmt: str = "svg") -> bytes:
        """
        Raises:
            FileNotFoundError: If the image does not exist
        """
        return self._path(file_id, fmt).read_bytes()

    def exists(self, file_id: str, fmt: str = "svg") -> bool:
        return self._path(file_id, fmt).exists()

    def delete(self, file_id: str, fmt: str = "svg") -> bool:
        path = self._path(file_id, fmt)
        if not path.exists():
            return False
        path.unlink()
        logger.info(f"Deleted {fmt.upper()} chart image {file_id}")
        return True
