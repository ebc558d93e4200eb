"""Deployment domain package."""
