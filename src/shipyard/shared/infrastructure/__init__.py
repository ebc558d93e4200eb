"""Shared infrastructure: settings, logging, resilience, command execution."""
