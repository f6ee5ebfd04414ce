"""Human review queue for tasks held back from publication."""
