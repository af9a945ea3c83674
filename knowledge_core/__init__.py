"""
Knowledge Core - Knowledge Ingestion & Staging Governance.

Turns unstructured text into atoms, stages them in review clusters and
governs their promotion into canonical knowledge.
"""

__version__ = "0.1.0"
