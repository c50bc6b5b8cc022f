"""Terminal renderers for the CLI commands."""
