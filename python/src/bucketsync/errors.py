"""Error definitions for bucketsync."""


class BucketError(Exception):
    """Base error for bucket operations.

    Attributes:
        message: Human-readable error description.
        bucket: Name of the bucket the operation targeted, if any.
        key: Key, path, or pattern the operation targeted, if any.
        action: Short name of the failing operation (e.g. "put", "push").
    """

    def __init__(
        self,
        message: str,
        bucket: str = "",
        key: str = "",
        action: str = "",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.bucket = bucket
        self.key = key
        self.action = action

    def __str__(self) -> str:
        text = self.message
        context = [
            f"{name}={value!r}"
            for name, value in (
                ("action", self.action),
                ("bucket", self.bucket),
                ("key", self.key),
            )
            if value
        ]
        if context:
            text += f" ({', '.join(context)})"
        if self.__cause__ is not None:
            text += f": {self.__cause__}"
        return text


class ConfigurationError(BucketError):
    """Bucket options are invalid or incomplete."""


class ConnectivityError(BucketError):
    """The backend could not be reached. Never retried internally."""


class NotFoundError(BucketError):
    """The requested object or local file does not exist."""


class TransferAbortError(BucketError):
    """A push or pull aborted; earlier transfers are not rolled back."""


class OperationCancelledError(BucketError):
    """The governing context was canceled or its deadline passed."""

    def __init__(self, message: str = "operation canceled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class StreamClosedError(BucketError):
    """A read or write was attempted on a released stream."""


class AggregateError(BucketError):
    """One error per failed key from a bulk operation.

    Every key was attempted even though this error was raised.

    Attributes:
        errors: The individual failures, in the order they occurred.
    """

    def __init__(self, errors: list[Exception], **kwargs) -> None:
        self.errors = list(errors)
        summary = "; ".join(str(err) for err in self.errors)
        super().__init__(f"{len(self.errors)} error(s): {summary}", **kwargs)
