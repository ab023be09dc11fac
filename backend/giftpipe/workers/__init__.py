"""Celery application and scheduled pipeline tasks."""
