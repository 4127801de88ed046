"""
Medication dispensing service.
"""
