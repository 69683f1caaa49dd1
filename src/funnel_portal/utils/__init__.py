"""
Utility modules for Funnel Portal.

Database access, authentication helpers and job execution logging.
"""
