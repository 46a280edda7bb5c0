"""Civic issue lifecycle and trust-weighted scoring engine."""

__version__ = "0.1.0"
