"""Iteration engine and the persistent task document it drives."""
