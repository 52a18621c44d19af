"""Smeta — construction estimate computation and completion-act ledger."""
