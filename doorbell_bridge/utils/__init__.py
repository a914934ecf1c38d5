"""Utility helpers for the doorbell bridge."""
