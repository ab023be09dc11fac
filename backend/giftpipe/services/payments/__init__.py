"""Payment processor integration."""
