"""Approval-gated auto-gift extension."""
