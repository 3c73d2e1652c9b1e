"""
Infrastructure Layer
=====================

Process-wide technical resources: database engine and sessions.
"""
