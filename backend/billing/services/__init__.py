"""Billing engine services: plan catalog, seats, state machine, event dispatch and audit."""
