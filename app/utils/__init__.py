"""
Logging utilities.
"""
