"""Sync engine: mappings, references, direction control, flows and run orchestration."""
