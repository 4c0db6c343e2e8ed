"""Command issuance: gateway operations, response normalization, error taxonomy."""
