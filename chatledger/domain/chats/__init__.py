from .models import Attachment, Chat

__all__ = ["Attachment", "Chat"]
