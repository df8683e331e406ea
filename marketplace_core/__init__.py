"""Transactional core of a partner marketplace: checkout, expiration and notifications."""

__version__ = "0.1.0"
