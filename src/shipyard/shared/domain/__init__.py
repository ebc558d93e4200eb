"""Shared domain types."""
