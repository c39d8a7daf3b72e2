"""Incident derivation from workflow run history."""
