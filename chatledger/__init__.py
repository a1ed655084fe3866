"""
chatledger - persisted, resumable, versioned LLM chat transcripts.

Assistant answers are streamed into durable message records, may carry several
response versions, and conversations can be branched at any point.

Example usage:
    from chatledger.infrastructure.app_factory import app_factory

    service = app_factory.get_chat_service()
    ids = await service.send_message("user@example.com", "Hello", model="gpt-4o-mini")

CLI (after pip install):
    chatledger-server --port 8000
"""

from chatledger.version import VERSION

__version__ = VERSION
__all__ = ["VERSION", "__version__"]
