"""
loadbench: staged virtual-user load generation with threshold evaluation.
"""

__version__ = "0.1.0"
