"""Gamified discount reward engine."""
