"""Statsd-compatible metrics aggregation server with Carbon and Datadog backends."""

__version__ = "0.1.0"