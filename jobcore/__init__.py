"""Background job processing core."""
