"""Attachment uploads for image and video messages."""
