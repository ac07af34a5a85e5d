"""Service-account credential exchange."""
