"""Operator-driven order recovery."""
