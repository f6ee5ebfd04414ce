"""Multi-provider LLM layer: routing, invocation, and provider adapters."""
