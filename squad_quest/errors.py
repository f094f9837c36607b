class RewardError(Exception):
    """Base class for failures surfaced to API callers.

    ``reason`` is the human-readable message, ``status_code`` the HTTP status
    and any extra keyword arguments are merged into the JSON body.
    """
    status_code = 500

    def __init__(self, reason: str, status_code: int = None, **payload):
        super().__init__(reason)
        self.reason = reason
        if status_code is not None:
            self.status_code = status_code
        self.payload = payload

    def to_dict(self) -> dict:
        body = {'error': self.reason}
        body.update(self.payload)
        return body


class Unauthorized(RewardError):
    status_code = 401


class Forbidden(RewardError):
    status_code = 403


class NotFound(RewardError):
    status_code = 404


class PreconditionFailed(RewardError):
    status_code = 409


class InvalidRequest(PreconditionFailed):
    status_code = 400


class TransientConflict(RewardError):
    status_code = 503


class Internal(RewardError):
    status_code = 500
