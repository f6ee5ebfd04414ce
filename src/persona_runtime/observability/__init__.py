"""Runtime events, worker health, and circuit breaker state."""
