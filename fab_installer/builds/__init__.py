"""Installer build orchestration.

This module handles:
- Output naming
- Build fingerprints and the up-to-date gate
- Payload assembly into the staging directory
- Manual-mode archive and boot-config outputs
- Dispatch to the disk image builder for USB/ISO outputs
"""
