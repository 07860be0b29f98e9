"""Model provider abstractions."""
