# pairchat/common/exceptions/exceptions.py
# =============================================================================
# Custom exceptions for PairChat
# =============================================================================


class PairChatException(Exception):
    """Base exception for PairChat"""
    pass


class ValidationError(PairChatException):
    """Raised when validation fails"""
    pass


class NotFoundError(PairChatException):
    """Raised when a resource is not found"""
    pass


# Alias for compatibility
ResourceNotFoundError = NotFoundError


class ConflictError(PairChatException):
    """Raised when a mutation conflicts with current state (e.g., target gone)"""
    pass


class DomainError(PairChatException):
    """Raised for domain-specific errors"""
    pass


class InfrastructureError(PairChatException):
    """Raised for infrastructure errors"""
    pass
