"""Custom exception classes for hitlflow components."""

import logging
from typing import Any, Dict, Optional


class HITLError(Exception):
    """Base exception class for all hitlflow errors.

    Provides structured error handling with user-friendly messages,
    technical details, and error recovery suggestions.
    """

    log_level = logging.ERROR
    default_error_code: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        user_message: Optional[str] = None,
        technical_details: Optional[Dict[str, Any]] = None,
        recovery_suggestions: Optional[list[str]] = None,
        error_code: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        """Initialize error with structured information.

        Args:
            message: Technical error message for logging
            user_message: User-friendly error message
            technical_details: Additional technical context
            recovery_suggestions: List of suggested recovery actions
            error_code: Unique error code for categorization
            original_error: Original exception that caused this error
        """
        super().__init__(message)
        self.user_message = user_message or self._generate_user_message(message)
        self.technical_details = technical_details or {}
        self.recovery_suggestions = recovery_suggestions or []
        self.error_code = error_code or self.default_error_code
        self.original_error = original_error

        self._log_error()

    def _generate_user_message(self, technical_message: str) -> str:
        """Generate a user-friendly message from technical details."""
        return f"An error occurred: {technical_message}"

    def _log_error(self) -> None:
        """Log the error with structured information."""
        logger = logging.getLogger(self.__class__.__module__)

        log_data = {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "technical_message": str(self),
            "user_message": self.user_message,
            "technical_details": self.technical_details,
            "recovery_suggestions": self.recovery_suggestions
        }

        if self.original_error:
            log_data["original_error"] = {
                "type": type(self.original_error).__name__,
                "message": str(self.original_error)
            }

        logger.log(
            self.log_level,
            f"HITL Error: {self.__class__.__name__}",
            extra={"error_data": log_data},
            exc_info=self.original_error
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": str(self),
            "user_message": self.user_message,
            "technical_details": self.technical_details,
            "recovery_suggestions": self.recovery_suggestions,
            "original_error": str(self.original_error) if self.original_error else None
        }


class NotFoundError(HITLError):
    """Raised when a request, chain or feedback id is unknown."""

    default_error_code = "not_found"
    log_level = logging.WARNING

    def _generate_user_message(self, technical_message: str) -> str:
        return "The referenced approval item does not exist or has been removed."


class RequestNotFoundError(NotFoundError):
    """Unknown approval request id."""

    default_error_code = "request_not_found"

    def _generate_user_message(self, technical_message: str) -> str:
        return "The approval request could not be found. It may have been cancelled or evicted."


class ChainNotFoundError(NotFoundError):
    """Unknown or empty approval chain id."""

    default_error_code = "chain_not_found"

    def _generate_user_message(self, technical_message: str) -> str:
        return "The approval chain is not configured. Please check the chain id."


class FeedbackNotFoundError(NotFoundError):
    """Unknown feedback id."""

    default_error_code = "feedback_not_found"


class InvalidStateError(HITLError):
    """Raised when a mutation targets a request that is no longer open."""

    default_error_code = "invalid_state"
    log_level = logging.WARNING

    def _generate_user_message(self, technical_message: str) -> str:
        """Generate user-friendly message for state errors."""
        if "cancelled" in technical_message.lower():
            return "This approval request was cancelled."
        elif "timeout" in technical_message.lower():
            return "This approval request has already timed out."
        else:
            return "This approval request has already been resolved."


class ValidationError(HITLError):
    """Exception raised for malformed responses and out-of-domain values."""

    default_error_code = "validation_error"

    def _generate_user_message(self, technical_message: str) -> str:
        """Generate user-friendly message for validation errors."""
        if "required" in technical_message.lower():
            return "Required information is missing. Please provide all necessary details."
        elif "decision" in technical_message.lower():
            return "The approval decision is not recognized."
        elif "confidence" in technical_message.lower():
            return "Confidence values must lie between 0 and 1."
        else:
            return "The provided data is not valid. Please check your input."


class EvaluationError(HITLError):
    """Internal scoring failure. Always caught by the evaluator."""

    default_error_code = "evaluation_error"
    log_level = logging.WARNING


class ConfigurationError(HITLError):
    """Exception raised for configuration-related errors."""

    default_error_code = "configuration_error"

    def _generate_user_message(self, technical_message: str) -> str:
        """Generate user-friendly message for configuration errors."""
        if "file not found" in technical_message.lower():
            return "Configuration file not found. Please check the file path and ensure it exists."
        elif "invalid yaml" in technical_message.lower() or "parse" in technical_message.lower():
            return "Configuration file format is invalid. Please check the YAML syntax."
        elif "empty" in technical_message.lower():
            return "Configuration file is empty."
        else:
            return "There's an issue with your configuration. Please review your settings."
