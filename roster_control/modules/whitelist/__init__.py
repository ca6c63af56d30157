"""Whitelist entry storage, confidence policy and status queries."""
