# core/__init__.py
"""Configuration, logging, cache value model and the in-process rate limiter."""
