"""
Google integration: OAuth credentials and the Calendar API.
"""
