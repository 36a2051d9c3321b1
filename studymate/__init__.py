"""
StudyMate: friend graph, study time and money tracking for students.
"""

from .utils.logging_config import setup_logging

__version__ = '1.0.0'

setup_logging()
