"""Shared helpers."""

from .http import build_retry, create_session

__all__ = ["build_retry", "create_session"]
