"""Payment webhook inbound system.

Receives provider notifications, acknowledges them immediately and
reconciles them against pending orders in the background.
"""
