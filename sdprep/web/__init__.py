"""HTTP/WebSocket surface."""
