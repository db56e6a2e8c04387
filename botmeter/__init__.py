"""
botmeter - Credit metering, usage gates and deferred task scheduling.
"""

__version__ = "0.1.0"
