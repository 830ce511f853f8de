"""Call state, dialog and delivery components of the orchestrator."""
