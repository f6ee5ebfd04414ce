"""Lease-based persona task queue and reply execution."""
