"""
Core package for shared utilities.

Holds settings and logging shared by the API process and the workers.
"""
