"""Time-driven pipeline processes."""
