"""Persistence of run state for inspection and resume."""
