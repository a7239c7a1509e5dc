"""Core configuration, errors, logging and job management."""
