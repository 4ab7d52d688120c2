"""
Integration tests.

These exercise components against running infrastructure (redis for push
channels) and are skipped when it is not reachable. Select them with
``pytest -m integration``.
"""
