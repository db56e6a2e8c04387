"""
Scheduled task workers (dramatiq actors).
"""
