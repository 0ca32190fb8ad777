"""Kanban task tracker with time tracking and time reports."""

__version__ = "1.0.0"
