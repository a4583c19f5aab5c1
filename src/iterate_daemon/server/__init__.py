"""HTTP server entry points."""
