"""Multi-step approval processes."""
