"""Booking and payment core for the education cooperative platform."""

__version__ = "0.1.0"
