"""
Model registry and vendor SDK adapters.
"""
