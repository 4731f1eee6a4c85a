"""CLI sub-command handlers."""
