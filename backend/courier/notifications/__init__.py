"""Deferred push notifications for offline recipients."""
