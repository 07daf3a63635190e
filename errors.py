class BlingIntegrationError(Exception):
    """Base error. Carries the HTTP status the API layer answers with."""
    status_code = 500

    def __init__(self, message, status_code=None, details=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def to_dict(self):
        body = {'message': self.message}
        body.update(self.details)
        return body


class ConfigurationError(BlingIntegrationError):
    """Missing credentials, disabled sync, unavailable platform service."""
    status_code = 400


class AuthenticationError(BlingIntegrationError):
    """No token on record or refresh failed. The user must re-authorize."""
    status_code = 401

    def to_dict(self):
        body = super().to_dict()
        body['reauthorize'] = True
        return body


class NotFoundError(BlingIntegrationError):
    status_code = 404


class OrderValidationError(BlingIntegrationError):
    status_code = 400


class BlingAPIError(BlingIntegrationError):
    """Upstream failure. `upstream_status` keeps Bling's own status code."""
    status_code = 502

    def __init__(self, message, upstream_status=None, response=None):
        # Bling rejecting our input is a client error; anything else is a bad gateway
        status_code = 400 if upstream_status is not None and 400 <= upstream_status < 500 else None
        super().__init__(message, status_code=status_code)
        self.upstream_status = upstream_status
        self.response = response

    def to_dict(self):
        body = super().to_dict()
        if self.upstream_status is not None:
            body['upstream_status'] = self.upstream_status
        return body
