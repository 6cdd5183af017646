"""Build fingerprints.

A fingerprint is a SHA-256 over the canonical JSON form of everything that
determines an installer build: the tool version, the target, the canonical
configuration documents, the build mode and, for image modes, the partition
sizes. Configuration documents are canonical YAML dumps (see
fab_installer.fab.io), so comments, key order and document order in the
input files do not affect the fingerprint.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from typing import Any

# Bump when the fingerprint format changes
FINGERPRINT_SCHEMA_VERSION = "2"


@dataclass
class FingerprintInputs:
    """Canonical representation of all build inputs.

    Attributes:
        schema_version: Version of the fingerprint format.
        tool_version: Version of fab_installer doing the build.
        kind: Target kind (control or node).
        name: Target name.
        config: Canonical configuration documents, in a fixed order.
        mode: Build mode.
        image_sizes: Partition sizes by name; empty for manual builds.
    """

    tool_version: str
    kind: str
    name: str
    mode: str
    config: list[str] = field(default_factory=list)
    image_sizes: dict[str, int] = field(default_factory=dict)
    schema_version: str = FINGERPRINT_SCHEMA_VERSION

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


def compute_fingerprint(inputs: FingerprintInputs) -> str:
    """Compute the fingerprint of build inputs.

    Args:
        inputs: FingerprintInputs instance.

    Returns:
        Fingerprint string prefixed with 'sha256:'.
    """
    canonical = json.dumps(inputs.to_dict(), sort_keys=True, separators=(",", ":"))
    return "sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


__all__ = ["FINGERPRINT_SCHEMA_VERSION", "FingerprintInputs", "compute_fingerprint"]
