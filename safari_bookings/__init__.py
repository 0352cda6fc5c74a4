"""Booking admission and M-Pesa payment reconciliation service."""

__version__ = "1.0.0"
