"""
nodespeed: end-to-end latency and throughput measurement between two nodes.
"""

__version__ = "0.1.0"
