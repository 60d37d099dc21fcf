"""Concurrent benchmark trials over isolated workspace copies."""
