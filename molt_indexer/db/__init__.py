"""Projection store: schema, cursors, writes and read queries."""
