"""Application lifecycle and logging."""
