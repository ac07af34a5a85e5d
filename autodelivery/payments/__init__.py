"""Payment provider proxy."""
