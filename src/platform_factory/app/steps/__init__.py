"""Per-resource execute/verify step modules."""
