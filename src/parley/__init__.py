"""Parley: per-channel Claude agent sessions with ordered runs and retry recovery."""
