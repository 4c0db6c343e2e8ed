"""Client context and resolution of the logical call state."""
