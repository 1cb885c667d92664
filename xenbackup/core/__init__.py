"""
Configuration, logging and error types shared by all services.
"""
