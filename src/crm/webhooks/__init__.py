"""Outgoing webhooks: endpoint management, signed delivery, and retries."""
