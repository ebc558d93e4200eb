"""Approval application services."""
