"""Service layer consumed by the CLI and web surfaces."""
