"""Broadcast channel and live connection server."""
