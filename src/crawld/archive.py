"""Pack and unpack repositories as tar archives next to their clone path.

A repository at ``/base/owner/name`` is archived to ``/base/owner/name.tar``.
Both operations replace the source: creating an archive removes the
directory, extracting one removes the archive.
"""

import shutil
import tarfile
from pathlib import Path

ARCHIVE_SUFFIX = ".tar"


def archive_path(path: Path) -> Path:
    """Return the archive location for a repository path."""
    path = Path(path)
    return path.with_name(path.name + ARCHIVE_SUFFIX)


def create_in_place(path: Path) -> Path:
    """Archive the directory at ``path`` and remove the directory."""
    path = Path(path)
    if not path.is_dir():
        raise FileNotFoundError(f"not a directory: {path}")

    dest = archive_path(path)
    tmp = dest.with_name(dest.name + ".tmp")
    try:
        with tarfile.open(tmp, "w") as tar:
            tar.add(path, arcname=path.name)
        tmp.replace(dest)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise

    shutil.rmtree(path)
    return dest


def extract_in_place(archive: Path) -> Path:
    """Extract ``archive`` next to itself and remove it.

    Returns the extracted repository path.
    """
    archive = Path(archive)
    if not archive.name.endswith(ARCHIVE_SUFFIX):
        raise ValueError(f"not a {ARCHIVE_SUFFIX} archive: {archive}")

    dest = archive.with_name(archive.name[: -len(ARCHIVE_SUFFIX)])
    with tarfile.open(archive, "r") as tar:
        if hasattr(tarfile, "data_filter"):
            tar.extractall(archive.parent, filter="data")
        else:
            tar.extractall(archive.parent)

    if not dest.is_dir():
        raise tarfile.ReadError(f"{archive} does not contain {dest.name}/")
    archive.unlink()
    return dest
