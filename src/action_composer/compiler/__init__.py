"""Compilation of composition trees into state machines."""
