"""Shared utilities: credential encryption, structured logging and outbound HTTP."""
