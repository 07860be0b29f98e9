"""Persistence contracts and in-memory implementations."""
