"""Command-line interface for allotment."""
