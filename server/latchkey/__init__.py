"""Latchkey - passwordless authentication with one-time codes and passkeys."""

__version__ = "0.1.0"
