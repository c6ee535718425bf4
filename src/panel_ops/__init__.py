"""Hosting panel operation orchestration: queue, dispatcher and watchdog."""

__version__ = "0.1.0"
