"""Incremental, content-scoped builds for the Cargo workspace."""
