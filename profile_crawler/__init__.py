"""
Adaptive, resumable profile crawl orchestration.
"""

__version__ = "0.1.0"
