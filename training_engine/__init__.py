"""
Assessment and training-progression engine
"""
__version__ = "1.0.0"
