class ApplicationError(Exception):
    status_code = 500

    def __init__(self, message, uid=None, api_version=None):
        super().__init__(message)
        self.uid = uid
        self.api_version = api_version


class ConfigurationError(ApplicationError):
    pass


class EmptyBody(ApplicationError):
    status_code = 400


class UnsupportedMediaType(ApplicationError):
    status_code = 415


class DecodeError(ApplicationError):
    status_code = 400


class InvalidPodPayload(ApplicationError):
    """The envelope decoded but its object is not a usable Pod."""


class PatchEncodeError(ApplicationError):
    pass


class ResponseWriteError(ApplicationError):
    pass
