"""
Application configuration.
"""

from app.config.settings import settings, Settings

__all__ = ['settings', 'Settings']
