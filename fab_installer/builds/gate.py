"""Up-to-date gate for installer builds.

The stored fingerprint (``.inhash``) is removed before any output is touched
and written back only after every output was produced, so a crash at any
point leaves a missing or stale fingerprint and forces a rebuild.
"""

from __future__ import annotations

import logging

from fab_installer.builds.outputs import InstallPaths
from fab_installer.fsutil import is_present, remove_if_exists, write_file_atomic
from fab_installer.types import BuildMode

logger = logging.getLogger(__name__)


def read_fingerprint(paths: InstallPaths) -> str | None:
    """Read the stored fingerprint, or None if there is none."""
    try:
        return paths.hash_file.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None


def is_up_to_date(paths: InstallPaths, mode: BuildMode, fingerprint: str) -> bool:
    """Check whether a previous build can be reused.

    Args:
        paths: Output paths of the target.
        mode: Build mode requested now.
        fingerprint: Fingerprint of the current inputs.

    Returns:
        True if the stored fingerprint matches and every expected output
        for ``mode`` exists.
    """
    stored = read_fingerprint(paths)
    if stored != fingerprint:
        if stored is not None:
            logger.debug("Fingerprint changed for %s", paths.base_name)
        return False

    if not is_present(*paths.expected_outputs(mode)):
        logger.debug("Outputs missing for %s", paths.base_name)
        return False

    return True


def reset_outputs(paths: InstallPaths) -> None:
    """Delete the stored fingerprint and every previous output.

    Raises:
        OSError: If anything cannot be removed.
    """
    remove_if_exists(paths.hash_file)
    for path in paths.all_outputs():
        remove_if_exists(path)


def persist_fingerprint(paths: InstallPaths, fingerprint: str) -> None:
    """Store the fingerprint of a completed build."""
    write_file_atomic(paths.hash_file, fingerprint.encode("utf-8"), mode=0o600)


__all__ = [
    "is_up_to_date",
    "persist_fingerprint",
    "read_fingerprint",
    "reset_outputs",
]
