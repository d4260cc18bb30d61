"""Payment reconciliation: donations vs. Stripe balance transactions."""
