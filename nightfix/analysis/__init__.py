"""Failure analysis: budgeted prompts and validated patch proposals."""
