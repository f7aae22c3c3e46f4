"""Browser-facing HTTP and WebSocket API."""
