"""Vector store module for the site knowledge base.

Provides sentence-boundary chunking, rate-limited embedding generation
through the inference service, and a flat JSON store searched by linear scan.
"""
