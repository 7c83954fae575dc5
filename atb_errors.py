from typing import Optional


class AtbError(Exception):
    pass


class ParseError(AtbError):
    def __init__(self, value: str):
        super().__init__(f"invalid nodeID: {value!r}")
        self.value = value


class NotFoundError(AtbError):
    def __init__(self, node_id: int):
        super().__init__(f"bus stop with nodeID={node_id} not found")
        self.node_id = node_id


class UpstreamError(AtbError):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TransformError(AtbError):
    pass


class MissingConfig(AtbError):
    def __init__(self, message: str):
        super().__init__(message)


class InvalidConfig(AtbError):
    pass


class ApiError(Exception):
    """Failure outcome of a request handler.

    ``status`` and ``message`` are what the client sees; ``cause`` is only
    ever logged.
    """

    def __init__(self, status: int, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.status = status
        self.message = message
        self.cause = cause

    def to_dict(self) -> dict:
        return {"status": self.status, "message": self.message}
