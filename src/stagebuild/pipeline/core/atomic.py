"""
Atomic filesystem helpers: an interrupted build never leaves a half-written file or directory.
"""
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional


def atomic_write(
    content: bytes | str,
    target_path: Path,
    *,
    encoding: Optional[str] = "utf-8",
) -> None:
    """
    Write a file atomically (temp file in the same directory, then rename).

    Args:
        content: file content (bytes or str)
        target_path: destination path
        encoding: text encoding (only used when content is str)
    """
    target_path.parent.mkdir(parents=True, exist_ok=True)

    # Same directory so the rename stays on one filesystem
    fd, temp_name = tempfile.mkstemp(prefix=f".{target_path.name}.", suffix=".tmp", dir=target_path.parent)
    os.close(fd)
    temp_path = Path(temp_name)

    try:
        if isinstance(content, str):
            temp_path.write_text(content, encoding=encoding)
        else:
            temp_path.write_bytes(content)
        temp_path.replace(target_path)
    except BaseException:
        if temp_path.exists():
            temp_path.unlink()
        raise


def atomic_copytree(
    source_dir: Path,
    target_dir: Path,
    *,
    replace: bool = False,
) -> bool:
    """
    Publish a directory tree atomically (copy to a temp sibling, then rename).

    Args:
        source_dir: directory to copy
        target_dir: final location
        replace: replace an existing target; otherwise an existing target wins

    Returns:
        True if this call published target_dir, False if it already existed
    """
    target_dir.parent.mkdir(parents=True, exist_ok=True)
    if target_dir.exists() and not replace:
        return False

    temp_dir = Path(tempfile.mkdtemp(prefix=f".{target_dir.name}.", suffix=".tmp", dir=target_dir.parent))
    try:
        shutil.copytree(source_dir, temp_dir / "tree", symlinks=True)
        if target_dir.exists():
            if not replace:
                # Another invocation published the same tree first
                return False
            shutil.rmtree(target_dir)
        (temp_dir / "tree").rename(target_dir)
        return True
    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)
