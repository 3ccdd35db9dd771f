"""Refinery - agent workflow graph engine.

Chains document-improvement agents into a directed graph and runs the graph
over a document through a durable job queue.
"""

__version__ = "0.1.0"
