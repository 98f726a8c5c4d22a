"""Core configuration, logging, errors, retry and metrics."""
