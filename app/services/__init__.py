"""
Services module for business logic.

- sync: Directory and device sync engine
"""
