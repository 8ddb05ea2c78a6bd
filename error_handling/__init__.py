"""Error handling and user feedback."""
