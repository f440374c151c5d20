"""Infrastructure adapters: record writer, repositories and the gateway HTTP client."""
