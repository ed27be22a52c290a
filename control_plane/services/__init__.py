"""Lifecycle services — validators, audit, store, orchestration and sweeps."""
