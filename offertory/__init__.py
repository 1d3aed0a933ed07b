"""Transactional state engine for multi-tenant contribution and spending records."""

__version__ = "0.1.0"
