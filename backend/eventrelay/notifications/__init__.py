"""Notification content, multi-channel dispatch and scheduling."""
