"""
Core modules for the issue enhancer.

This package contains backend strategies, request normalization, cost
governance, the fallback chain executor and response synthesis.
"""
