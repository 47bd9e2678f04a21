"""Shared infrastructure: errors, logging, metrics, retries."""
