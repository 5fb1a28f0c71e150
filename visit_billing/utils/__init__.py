"""Shared utility functions for the visiting-nurse billing backend."""

from .date_parser import parse_flexible_date, parse_timestamp

__all__ = ["parse_flexible_date", "parse_timestamp"]
