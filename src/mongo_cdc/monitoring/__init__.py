"""Prometheus metrics and replication health checks."""
