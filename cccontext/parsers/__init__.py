"""Transcript line parsers."""
