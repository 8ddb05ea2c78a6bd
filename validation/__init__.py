"""File validation and security scanning."""
