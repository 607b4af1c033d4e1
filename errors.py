"""
Error taxonomy shared by the aggregators, the repositories and the API.

Every error carries the HTTP status the API answers with, so route code can
let them propagate to the handlers registered in create_app().
"""


class FarmHubError(Exception):
    status_code = 400

    def __init__(self, message=None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def to_dict(self):
        return {'success': False, 'error': self.message, 'kind': self.__class__.__name__}


class InvalidEntry(FarmHubError):
    """A record violates a stated invariant (negative amount, bad date, ...)."""
    status_code = 400


class InconsistentState(FarmHubError):
    """Stored data contradicts itself, e.g. poll total vs option votes."""
    status_code = 409


class UpstreamUnavailable(FarmHubError):
    status_code = 502


class NotFound(FarmHubError):
    status_code = 404


class OptionNotFound(NotFound):
    pass


class CropNotFound(NotFound):
    pass


class RecordNotFound(NotFound):
    pass


class PollClosed(FarmHubError):
    status_code = 409


class DuplicateVote(FarmHubError):
    status_code = 409


class RepositoryError(FarmHubError):
    """The store rejected or failed a read/write."""
    status_code = 500
