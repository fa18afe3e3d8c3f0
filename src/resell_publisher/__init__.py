"""Resell Publisher: publish listing drafts to eBay behind a billing entitlement."""

__version__ = "0.1.0"
