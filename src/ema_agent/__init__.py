"""
EMA Agent - a tool-using chat agent that keeps its context bounded.
"""

__version__ = "0.1.0"
