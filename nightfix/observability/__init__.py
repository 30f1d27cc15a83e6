"""Event stream for notifiers and audit logs."""
