"""Domain layer: transcript entities, the version ledger and errors."""
