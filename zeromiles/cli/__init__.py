"""Command-line interface for zeromiles."""
