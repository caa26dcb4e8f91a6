"""
Dependency-aware Job Queue

A persistent job queue with a dependency graph between jobs, retry chains with
bounded attempts, atomic claiming for independent workers, and cascading
cancellation of jobs that can no longer succeed.
"""

__version__ = "1.0.0"
