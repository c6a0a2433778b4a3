"""Configuration, errors and the migration runner."""
