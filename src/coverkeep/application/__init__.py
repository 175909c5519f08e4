"""Application layer: cover services and background workers."""
