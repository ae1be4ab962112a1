"""Kuro — run HTTP requests on cron schedules."""

__version__ = "0.1.0"
