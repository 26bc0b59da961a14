"""Ticket & payment lifecycle engine: inventory, mobile-money payments,
ticket credentials and door check-in."""

__version__ = "0.3.0"
