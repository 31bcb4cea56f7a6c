"""
Exception hierarchy for Waypost services.

RPC failures carry a google.rpc.Code and convert to and from the RpcStatus
wire value, so a failure raised inside a service can be reported as data
(Job.error, ValidateJobResponse.validation_error) or surfaced to the
transport as a status.
"""

from enum import IntEnum

from waypost.protocol.status import RpcStatus


class Code(IntEnum):
    """google.rpc.Code values."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16


class WaypostError(Exception):
    """Base exception for Waypost."""


class StreamClosedError(WaypostError):
    """The peer closed the stream or the transport failed; no more frames will arrive."""


class RPCError(WaypostError):
    """A failure with a status code, reportable as an RpcStatus."""

    code: Code = Code.UNKNOWN

    def __init__(self, message: str, code: Code | None = None) -> None:
        if code is not None:
            self.code = code
        self.message = message
        super().__init__(message)

    def to_status(self) -> RpcStatus:
        return RpcStatus(code=int(self.code), message=self.message)

    @classmethod
    def from_status(cls, status: RpcStatus) -> "RPCError":
        """Rebuild the most specific error class for a status."""
        try:
            code = Code(status.code)
        except ValueError:
            code = Code.UNKNOWN
        error_cls = _BY_CODE.get(code)
        if error_cls is None:
            return RPCError(status.message, code=code)
        return error_cls(status.message)


class CanceledError(RPCError):
    code = Code.CANCELLED


class InvalidArgumentError(RPCError):
    code = Code.INVALID_ARGUMENT


class DeadlineExceededError(RPCError):
    code = Code.DEADLINE_EXCEEDED


class NotFoundError(RPCError):
    code = Code.NOT_FOUND


class AlreadyExistsError(RPCError):
    code = Code.ALREADY_EXISTS


class ResourceExhaustedError(RPCError):
    code = Code.RESOURCE_EXHAUSTED


class FailedPreconditionError(RPCError):
    code = Code.FAILED_PRECONDITION


class AbortedError(RPCError):
    code = Code.ABORTED


class UnimplementedError(RPCError):
    code = Code.UNIMPLEMENTED


class UnauthenticatedError(RPCError):
    code = Code.UNAUTHENTICATED


class InvalidTokenError(UnauthenticatedError):
    """Raised for any token that fails decoding or verification."""

    def __init__(self, message: str = "invalid authentication token") -> None:
        super().__init__(message)


class InvalidTransitionError(FailedPreconditionError):
    """Raised when a job state change is not allowed."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid transition: {current} → {target}")


_BY_CODE: dict[Code, type[RPCError]] = {
    Code.CANCELLED: CanceledError,
    Code.INVALID_ARGUMENT: InvalidArgumentError,
    Code.DEADLINE_EXCEEDED: DeadlineExceededError,
    Code.NOT_FOUND: NotFoundError,
    Code.ALREADY_EXISTS: AlreadyExistsError,
    Code.RESOURCE_EXHAUSTED: ResourceExhaustedError,
    Code.FAILED_PRECONDITION: FailedPreconditionError,
    Code.ABORTED: AbortedError,
    Code.UNIMPLEMENTED: UnimplementedError,
    Code.UNAUTHENTICATED: UnauthenticatedError,
}
