"""Pytest bootstrap configuration.

Ensure environment variables are set before test collection and module
imports that depend on application settings.
"""
import os

# Keep settings independent from any local .env / production database
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///./test-payments.db")
os.environ.setdefault("PAYMENT__DEFAULT_PROVIDER", "stripe")
os.environ.setdefault("PAYMENT__DEFAULT_CURRENCY", "KRW")
