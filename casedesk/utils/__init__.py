"""Utility functions."""

from casedesk.utils.time import ensure_utc, format_datetime, parse_date, utc_now

__all__ = ["utc_now", "ensure_utc", "format_datetime", "parse_date"]
