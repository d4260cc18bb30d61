"""Stripe integration: webhook receiver and balance transaction access."""
