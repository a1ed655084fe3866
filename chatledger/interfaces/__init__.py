"""Protocols for the external collaborators: completion source and transcript store."""
