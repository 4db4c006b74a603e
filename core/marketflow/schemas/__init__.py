"""Pydantic models for workflow definitions and run results."""
