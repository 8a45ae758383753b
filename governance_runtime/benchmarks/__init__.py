"""Reliability benchmark: fixture corpus, gate metrics and the gates CLI."""
