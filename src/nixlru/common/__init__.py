"""Settings, logging, tracing and metrics shared across nixlru."""
