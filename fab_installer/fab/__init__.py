"""Fabricator configuration documents (fab.yaml, wiring.yaml)."""
