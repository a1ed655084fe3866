"""Version information for chatledger."""

VERSION = "0.3.0"
