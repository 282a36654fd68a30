"""Web messaging conversation client."""

__version__ = "0.1.0"
