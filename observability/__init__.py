"""Observability utilities for the session engine."""
from .logger import log_event

__all__ = ["log_event"]
