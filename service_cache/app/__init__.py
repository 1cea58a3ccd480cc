"""
Access Layer content cache service.
"""
