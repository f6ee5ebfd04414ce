"""Versioned reply policy control plane and interaction eligibility."""
