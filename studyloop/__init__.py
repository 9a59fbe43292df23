"""
StudyLoop - adaptive study orchestration engine.

Drives every student interaction through a declared workflow of capability
calls while tracking per-student, per-topic proficiency.
"""

__version__ = "0.1.0"
