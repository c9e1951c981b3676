"""Synchronization engine components."""
