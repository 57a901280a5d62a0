"""
Configuration package for the TimeTide scheduling core
"""

from timetide.config.config_loader import load_config

__all__ = ["load_config"]
