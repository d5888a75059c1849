"""Chat-facing collaborators: delivery, per-chat workspace state, commands, polling."""
