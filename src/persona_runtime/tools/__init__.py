"""Model-invoked tools: registry, argument validation, and the bounded tool loop."""
