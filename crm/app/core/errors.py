"""
Service-level exceptions
"""


class NotFoundError(ValueError):
    """Raised when a requested entity does not exist"""
    pass
