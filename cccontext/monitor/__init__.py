"""Session discovery, tailing, caching and lifecycle."""
