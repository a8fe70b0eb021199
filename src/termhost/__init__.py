"""termhost: pseudo-terminal shell sessions driven over JSON-RPC."""

__version__ = "0.1.0"
