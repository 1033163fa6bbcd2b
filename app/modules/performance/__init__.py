"""
Performance Module

Daily per-symbol performance rollups.
"""
