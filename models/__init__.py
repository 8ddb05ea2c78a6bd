"""Data models, value objects and exception hierarchy."""
