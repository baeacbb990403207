"""Outbound mail delivery."""

from .smtp import SmtpSender, build_email

__all__ = ["SmtpSender", "build_email"]
