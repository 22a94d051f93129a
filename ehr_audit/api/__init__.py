"""HTTP API: routes and middleware."""
