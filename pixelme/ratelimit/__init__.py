"""Conversion rate limiting."""
