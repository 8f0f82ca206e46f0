"""Utilities module."""
from wagerboard.utils.datetime_helpers import ensure_utc, utc_now, isoformat_utc

__all__ = ["ensure_utc", "utc_now", "isoformat_utc"]
