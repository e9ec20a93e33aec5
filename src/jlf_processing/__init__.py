"""Patch-based joint label fusion and joint intensity fusion"""

__version__ = '0.1.0'
