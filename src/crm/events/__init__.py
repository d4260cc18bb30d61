"""Event reminder automations: scheduling, sending, and the reminder worker."""
