"""HTTP adapters for the fulfillment pipeline."""
