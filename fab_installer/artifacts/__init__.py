"""Artifact cache and OCI registry access.

This module handles:
- Registry references and cache entry naming
- Registry credentials from docker config.json
- Manifest and blob transfer over the OCI distribution API
- The locked, content-addressed on-disk cache
"""
