"""File system utilities for the evaluation job service."""

from pathlib import Path

import aiofiles


async def read_file_async(path: Path, encoding: str = "utf-8") -> str:
    """Read a file asynchronously.

    Args:
        path: Path to the file.
        encoding: File encoding.

    Returns:
        File contents as string.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        IOError: If the file can't be read.
    """
    async with aiofiles.open(path, "r", encoding=encoding) as f:
        return await f.read()


async def read_bytes_async(path: Path) -> bytes:
    """Read a file's raw bytes asynchronously."""
    async with aiofiles.open(path, "rb") as f:
        return await f.read()


async def write_bytes_async(path: Path, content: bytes, mkdir: bool = True) -> None:
    """Write bytes to a file asynchronously.

    The content is written to a sibling temporary file and moved into place,
    so readers never see a partial file.

    Args:
        path: Path to the file.
        content: Content to write.
        mkdir: Whether to create parent directories.
    """
    if mkdir:
        path.parent.mkdir(parents=True, exist_ok=True)

    tmp_path = path.with_name(f".{path.name}.tmp")
    async with aiofiles.open(tmp_path, "wb") as f:
        await f.write(content)
    tmp_path.replace(path)
