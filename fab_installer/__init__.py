"""Fabric installer builder.

This package builds and caches the bootable installation payload for a
fabric's control node and worker nodes: it fetches versioned artifacts from
an OCI registry, stages them, and renders a tarball + Ignition config, a raw
USB disk image, or an ISO image.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
