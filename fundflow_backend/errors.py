class FundFlowError(Exception):
    """Base error; ``message`` is what the client sees, ``status_code`` the HTTP status."""
    status_code = 500

    def __init__(self, message=None):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__


class ValidationError(FundFlowError):
    """Invalid request"""
    status_code = 400


class GatewayAuthError(FundFlowError):
    """M-Pesa authentication failed"""


class GatewayRequestError(FundFlowError):
    """M-Pesa request failed"""


class PersistenceError(FundFlowError):
    """Database write failed"""


class AuthenticationFailure(FundFlowError):
    """Invalid credentials"""
    status_code = 401
