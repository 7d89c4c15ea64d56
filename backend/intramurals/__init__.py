"""Intramurals tournament bracket engine."""
