"""Shared type definitions for fab_installer.

This module contains enums shared across subpackages to avoid circular
imports.
"""

from enum import Enum


class BuildMode(str, Enum):
    """Output produced for an installer build."""

    MANUAL = "manual"
    USB = "usb"
    ISO = "iso"


class NodeKind(str, Enum):
    """Kind of installable unit."""

    CONTROL = "control"
    NODE = "node"


class RegistryMode(str, Enum):
    """How installed nodes reach artifacts at runtime."""

    AIRGAP = "airgap"
    UPSTREAM = "upstream"


__all__ = ["BuildMode", "NodeKind", "RegistryMode"]
