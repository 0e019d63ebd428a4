"""Configuration, logging and storage helpers."""
