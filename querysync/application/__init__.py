"""
Application Layer

FastAPI app exposing the sync engine's health, statistics and admin
operations.
"""
