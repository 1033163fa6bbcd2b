"""
Positions Module

Position models, settlement math, trade deduplication and the
close / import-history endpoints.
"""
