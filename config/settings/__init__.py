"""
Django settings package for the PRS backup service.

This package contains environment-specific settings modules:
- base.py: Common settings, including every BACKUP_* knob
- development.py: Development-specific settings
- production.py: Production-specific settings

The appropriate settings module is loaded based on the DJANGO_SETTINGS_MODULE
environment variable.
"""
