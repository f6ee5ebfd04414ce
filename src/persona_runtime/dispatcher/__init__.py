"""Turn NEW task intents into PENDING persona tasks."""
