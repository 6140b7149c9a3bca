"""Run reporting."""
