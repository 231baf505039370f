"""Core infrastructure: errors, logging, settings, dialects, storage adapters, schema."""
