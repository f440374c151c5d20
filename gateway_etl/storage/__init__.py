"""Persistence layer for payment records."""
