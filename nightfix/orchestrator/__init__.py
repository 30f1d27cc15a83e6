"""Scheduling and the apply/verify/promote loop."""
