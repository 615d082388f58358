"""
API route modules.
"""
