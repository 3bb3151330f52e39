"""Neural Mail - mail retrieval and on-device summarization service.

This package keeps a local, consistent view of IMAP mailbox headers and
summarizes messages with a local Ollama model, so message content never
leaves the machine.
"""

__version__ = "0.1.0"

from neural_mail.config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__"]
