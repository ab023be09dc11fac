"""Domain services for the fulfillment pipeline."""
