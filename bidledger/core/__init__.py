"""Core marketplace components."""
