"""Payment-webhook reconciliation and digital-stock fulfillment."""
