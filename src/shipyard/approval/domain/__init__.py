"""Approval domain package."""
