"""Operator alerts."""
