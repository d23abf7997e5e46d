"""
Shared plumbing for CareerPath apps.
"""
