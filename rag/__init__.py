"""Retrieval and answer assembly over the flat vector store."""
