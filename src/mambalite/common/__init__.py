"""Shared HTTP transport and logging helpers."""
