"""Event pipeline, worker pool and schedule runner."""
