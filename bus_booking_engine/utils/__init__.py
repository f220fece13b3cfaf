"""Shared utilities: errors, logging, circuit breakers and service wiring."""
