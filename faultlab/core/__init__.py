"""Shared config, models, exceptions and logging for faultlab."""
