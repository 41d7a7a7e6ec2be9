"""Outbound delivery channels."""
from channels.mail_transport import SmtpMailTransport, create_mail_transport, html_to_plain

__all__ = ["SmtpMailTransport", "create_mail_transport", "html_to_plain"]
