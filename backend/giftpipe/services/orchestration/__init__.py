"""Trigger orchestration: the single front door for order processing."""
