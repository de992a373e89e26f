"""
harvester

Event discovery, waterfall extraction and staged enrichment pipeline.
"""

__version__ = "0.1.0"
