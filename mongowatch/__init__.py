"""
mongowatch: durable MongoDB change stream consumption.

Resumes a collection's change stream from a persisted checkpoint and hands
every change to application handlers.
"""

__version__ = "0.1.0"
