"""
Stream primitives and background resource release.
"""
