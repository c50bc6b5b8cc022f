"""Service layer talking to the academy backend."""
