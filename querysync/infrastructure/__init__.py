"""
Infrastructure Layer

Adapters the sync engine is built on: query cache, data service client,
push transport, local store and monitoring.
"""
