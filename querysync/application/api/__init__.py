"""HTTP API: dependencies, models, middleware and routes."""
