"""
Service-to-service middleware
"""
