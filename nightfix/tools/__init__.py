"""Subprocess, git and filesystem helpers."""
