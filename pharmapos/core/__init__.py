"""
PharmaPOS Core Infrastructure
Configuration, logging, errors, locking and database setup
"""
