"""Presence, real-time chat routing and multi-channel notification delivery."""
