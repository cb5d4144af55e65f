"""Condition evaluation, trigger matching and action execution."""
