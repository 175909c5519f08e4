"""Background workers and the durable cover queue."""
