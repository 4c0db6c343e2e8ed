"""Authoritative in-memory store of call-related entities."""
