"""Driftwatch - detect record drift between services with Merkle Search Trees."""
