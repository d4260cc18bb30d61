"""Follow-ups: scheduled (optionally recurring) check-ins with email reminders."""
