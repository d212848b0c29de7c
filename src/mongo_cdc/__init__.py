"""
MongoDB change stream replication with crash-resumable checkpoints.
"""

__version__ = "0.1.0"
