"""Deployment application services."""
