"""
API routes.

- sync: Trigger sync runs, poll their status, list recent runs
"""
