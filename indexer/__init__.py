"""Indexer package for docfeed.

Model-runner clients (chat completion and embeddings) and the hybrid
Elasticsearch document index.
"""
