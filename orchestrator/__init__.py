"""Script generation orchestrator.

Priority job queue, pipeline controller, quality gate and rate limiter
coordinating video script generation for selected posts.
"""

__version__ = "0.1.0"
