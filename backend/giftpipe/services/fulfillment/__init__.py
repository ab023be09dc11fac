"""Fulfillment vendor integration."""
