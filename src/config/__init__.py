"""Configuration for the call-control SDK."""
