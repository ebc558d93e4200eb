"""Pipeline application layer: actions, engine, loader and operator service."""
