"""Workflow parsing, validation and execution."""
