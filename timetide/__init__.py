"""
TimeTide scheduling core
Durable job orchestration for calendar sync, conflict checks and webhook delivery
"""

__version__ = "1.0.0"
