"""Custom exception hierarchy for the prompt runner."""
from __future__ import annotations

from typing import Any, Optional


class PromptRunnerError(Exception):
    """Base exception for all prompt-runner errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# Stream-related exceptions
class StreamError(PromptRunnerError):
    """Base exception for push-stream errors."""

    pass


class TransportError(StreamError):
    """Raised when the push stream fails to open or drops unexpectedly."""

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        details: dict[str, Any] = {}
        if url:
            details["url"] = url
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details)
        self.url = url
        self.status_code = status_code


# Persistence exceptions
class PersistenceError(PromptRunnerError):
    """Base exception for durable blob storage errors."""

    def __init__(self, message: str, key: Optional[str] = None, path: Optional[str] = None):
        details = {}
        if key:
            details["key"] = key
        if path:
            details["path"] = path
        super().__init__(message, details)
        self.key = key
        self.path = path


class PersistenceReadError(PersistenceError):
    """Raised when a stored blob is missing its container or cannot be parsed."""

    pass


class PersistenceWriteError(PersistenceError):
    """Raised when a blob cannot be written back."""

    pass


# Configuration exceptions
class ConfigurationError(PromptRunnerError):
    """Raised when configuration is invalid."""

    pass


class ConfigFileNotFoundError(ConfigurationError):
    """Raised when a required config file is not found."""

    def __init__(self, file_path: str):
        super().__init__(f"Configuration file not found: {file_path}", {"file_path": file_path})
        self.file_path = file_path
