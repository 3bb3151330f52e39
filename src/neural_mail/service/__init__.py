"""UI-facing service facade."""

from .facade import MailService, error_kind, translate_errors

__all__ = ["MailService", "error_kind", "translate_errors"]
