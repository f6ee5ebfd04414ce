"""Narrow read/write adapter over the forum mirror tables."""
