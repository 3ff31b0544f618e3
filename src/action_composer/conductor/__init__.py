"""Conductor: step interpreter and session-driving action."""
