"""Recommendation lifecycle: the status state machine and recommendation storage."""
